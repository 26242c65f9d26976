# src/hl7_fhir_engine/expression/functions.py
"""
Built-in functions available to template expressions.

Every built-in takes the evaluation context followed by one EvaluationResult
per argument and returns a plain value, a list of values or None. Built-ins
are pure: they read the context but never touch the resource graph.

Functions are registered with @builtin(name); the arity is read from the
signature so that calls can be checked when a template is parsed. Raising
ValueError (or an arithmetic error) from a built-in marks a data-quality
problem: the evaluator logs it and the call evaluates to empty.
"""

from __future__ import annotations

import base64 as _b64
import hashlib
import inspect
import logging
import uuid
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
)

from ..terminology import CodedConcept, Coding, system_id as _system_id
from ..transform.scope import ResourceRef
from ..tree import FieldValue
from . import dates
from .nodes import EvaluationResult, is_blank

if TYPE_CHECKING:
    from .context import EvaluationContext

LOG = logging.getLogger(__name__)

# ------------------------------------------------------------------------------
# registry
# ------------------------------------------------------------------------------


@dataclass(frozen=True)
class Builtin:
    """A registered function with its accepted argument counts."""

    name: str
    func: Callable[..., Any]
    min_args: int
    max_args: Optional[int]  # None: variadic

    def accepts(self, count: int) -> bool:
        if count < self.min_args:
            return False
        return self.max_args is None or count <= self.max_args

    def arity_text(self) -> str:
        if self.max_args is None:
            return f"at least {self.min_args}"
        if self.min_args == self.max_args:
            return str(self.min_args)
        return f"{self.min_args} to {self.max_args}"

    def __call__(
        self, ctx: "EvaluationContext", args: Sequence[EvaluationResult]
    ) -> EvaluationResult:
        return EvaluationResult.of(self.func(ctx, *args))


_FUNCTIONS: Dict[str, Builtin] = {}


def builtin(name: str):
    """
    Decorator registering a function under ``name``.

    Raises
    ------
    ValueError
        If a function with that name is already registered.
    TypeError
        If the decorated object is not callable.
    """

    def _wrap(func: Callable[..., Any]) -> Callable[..., Any]:
        if name in _FUNCTIONS:
            raise ValueError(f"Function already registered: {name!r}")
        if not callable(func):
            raise TypeError(f"Only callables can be registered, got {type(func)}")

        params = list(inspect.signature(func).parameters.values())[1:]  # skip ctx
        required = sum(
            1
            for p in params
            if p.kind is p.POSITIONAL_OR_KEYWORD and p.default is p.empty
        )
        variadic = any(p.kind is p.VAR_POSITIONAL for p in params)
        positional = sum(1 for p in params if p.kind is p.POSITIONAL_OR_KEYWORD)
        _FUNCTIONS[name] = Builtin(
            name, func, required, None if variadic else positional
        )
        return func

    return _wrap


def get_function(name: str) -> Optional[Builtin]:
    return _FUNCTIONS.get(name)


def available_functions() -> List[str]:
    return sorted(_FUNCTIONS)


# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


def text_of(value: Any) -> Optional[str]:
    """Scalar text of a value, or None when it is blank."""
    if is_blank(value):
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, FieldValue):
        text = value.text
    elif isinstance(value, CodedConcept):
        text = value.code or value.text or ""
    elif isinstance(value, Coding):
        text = value.code or ""
    elif isinstance(value, ResourceRef):
        text = value.reference
    else:
        text = str(value)
    text = text.strip()
    return text or None


def _texts(result: Optional[EvaluationResult]) -> List[str]:
    if result is None:
        return []
    return [t for t in (text_of(v) for v in result.present()) if t is not None]


def _first_text(result: Optional[EvaluationResult]) -> Optional[str]:
    texts = _texts(result)
    return texts[0] if texts else None


def _component(value: Any, index: int) -> Optional[str]:
    if isinstance(value, FieldValue):
        return text_of(value.component(index))
    if isinstance(value, str) and index == 1:
        return text_of(value)
    return None


def truthy(result: EvaluationResult) -> bool:
    if result.is_empty():
        return False
    value = result.first
    if isinstance(value, bool):
        return value
    return True


def _map_texts(result: EvaluationResult, fn: Callable[[str], Any]) -> List[Any]:
    return [fn(t) for t in _texts(result)]


# ------------------------------------------------------------------------------
# strings
# ------------------------------------------------------------------------------


@builtin("string")
def fn_string(ctx, x):
    return _texts(x)


@builtin("upper")
def fn_upper(ctx, x):
    return _map_texts(x, str.upper)


@builtin("lower")
def fn_lower(ctx, x):
    return _map_texts(x, str.lower)


@builtin("trim")
def fn_trim(ctx, x):
    return _map_texts(x, str.strip)


@builtin("join")
def fn_join(ctx, x, sep=None):
    """Join every value of ``x``; ``sep`` defaults to a single space."""
    separator = _first_text(sep) if sep is not None else " "
    if separator == "\\n":
        separator = "\n"
    texts = _texts(x)
    return (separator or "").join(texts) if texts else None


@builtin("concat")
def fn_concat(ctx, *parts):
    texts = [_first_text(p) for p in parts]
    joined = "".join(t for t in texts if t)
    return joined or None


@builtin("split")
def fn_split(ctx, x, sep, index):
    """Token ``index`` (0-based) of ``x`` split on ``sep``; empty tokens are skipped."""
    text, separator = _first_text(x), _first_text(sep)
    if text is None or not separator:
        return None
    tokens = [t for t in text.split(separator) if t]
    i = int(_first_text(index) or "0")
    return tokens[i] if 0 <= i < len(tokens) else None


@builtin("substring")
def fn_substring(ctx, x, start, length=None):
    text = _first_text(x)
    if text is None:
        return None
    begin = int(_first_text(start) or "0")
    if length is None or _first_text(length) is None:
        return text[begin:] or None
    return text[begin:begin + int(_first_text(length))] or None


@builtin("replace")
def fn_replace(ctx, x, old, new):
    target = _first_text(old) or ""
    repl = _first_text(new) or ""
    if not target:
        return _texts(x)
    return _map_texts(x, lambda t: t.replace(target, repl))


# ------------------------------------------------------------------------------
# numbers
# ------------------------------------------------------------------------------

_TRUE = {"Y", "YES", "T", "TRUE", "1"}
_FALSE = {"N", "NO", "F", "FALSE", "0"}


def _number(text: str) -> Any:
    if any(c in text for c in ".eE"):
        return float(text)
    return int(text)


@builtin("integer")
def fn_integer(ctx, x):
    return _map_texts(x, int)


@builtin("decimal")
def fn_decimal(ctx, x):
    return _map_texts(x, _number)


@builtin("boolean")
def fn_boolean(ctx, x):
    def convert(text: str) -> bool:
        key = text.upper()
        if key in _TRUE:
            return True
        if key in _FALSE:
            return False
        raise ValueError(f"not a boolean: {text!r}")

    return [v if isinstance(v, bool) else convert(text_of(v) or "")
            for v in x.present()]


@builtin("quantity")
def fn_quantity(ctx, value, unit=None):
    """
    Build a Quantity from a numeric value and an optional unit.

    The unit may be a plain code or a CWE (code, text, system); its system
    defaults to UCUM.
    """
    text = _first_text(value)
    if text is None:
        return None
    out: Dict[str, Any] = {"value": _number(text)}
    u = unit.first if unit is not None else None
    if u is None:
        return out
    code = _component(u, 1) if isinstance(u, FieldValue) else text_of(u)
    label = (_component(u, 2) if isinstance(u, FieldValue) else None) or code
    system = _component(u, 3) if isinstance(u, FieldValue) else None
    if label:
        out["unit"] = label
    if code:
        out["system"] = ctx.terminology.system_url(system or "UCUM")
        out["code"] = code
    return out


# ------------------------------------------------------------------------------
# lists
# ------------------------------------------------------------------------------


@builtin("first")
def fn_first(ctx, x):
    present = x.present()
    return present[0] if present else None


@builtin("last")
def fn_last(ctx, x):
    present = x.present()
    return present[-1] if present else None


@builtin("count")
def fn_count(ctx, x):
    return len(x.present())


@builtin("distinct")
def fn_distinct(ctx, x):
    seen = set()
    out = []
    for v in x.present():
        key = text_of(v) if not isinstance(v, (FieldValue, ResourceRef)) else v
        if key in seen:
            continue
        seen.add(key)
        out.append(v)
    return out


@builtin("filter")
def fn_filter(ctx, x, component, value):
    """Keep the repetitions of ``x`` whose component ``component`` equals ``value``."""
    index = int(_first_text(component) or "1")
    wanted = set(_texts(value))
    return [v for v in x.present() if _component(v, index) in wanted]


@builtin("list")
def fn_list(ctx, *items):
    out: List[Any] = []
    for item in items:
        out.extend(item.present())
    return out


# ------------------------------------------------------------------------------
# logic
# ------------------------------------------------------------------------------


@builtin("exists")
def fn_exists(ctx, x):
    return not x.is_empty(ctx.policy)


@builtin("empty")
def fn_empty(ctx, x):
    return x.is_empty(ctx.policy)


@builtin("not")
def fn_not(ctx, x):
    return not truthy(x)


@builtin("all")
def fn_all(ctx, first, *rest):
    return all(truthy(r) for r in (first,) + rest)


@builtin("any")
def fn_any(ctx, first, *rest):
    return any(truthy(r) for r in (first,) + rest)


@builtin("eq")
def fn_eq(ctx, a, b):
    left, right = _first_text(a), _first_text(b)
    return left is not None and left == right


@builtin("ne")
def fn_ne(ctx, a, b):
    return not fn_eq(ctx, a, b)


@builtin("in")
def fn_in(ctx, x, options):
    text = _first_text(x)
    return text is not None and text in _texts(options)


@builtin("iif")
def fn_iif(ctx, condition, then, otherwise=None):
    if truthy(condition):
        return then
    return otherwise


# ------------------------------------------------------------------------------
# dates
# ------------------------------------------------------------------------------


@builtin("date")
def fn_date(ctx, x):
    return _map_texts(x, dates.to_fhir_date)


@builtin("datetime")
def fn_datetime(ctx, x):
    return _map_texts(x, lambda t: dates.to_fhir_datetime(t, ctx.timezone))


@builtin("instant")
def fn_instant(ctx, x):
    return _map_texts(x, lambda t: dates.to_fhir_instant(t, ctx.timezone))


@builtin("diff_minutes")
def fn_diff_minutes(ctx, start, end):
    begin = dates.to_aware_datetime(_first_text(start), ctx.timezone)
    finish = dates.to_aware_datetime(_first_text(end), ctx.timezone)
    if begin is None or finish is None:
        return None
    return int((finish - begin).total_seconds() // 60)


# ------------------------------------------------------------------------------
# terminology
# ------------------------------------------------------------------------------


@builtin("concept")
def fn_concept(ctx, x, default_system=None):
    """One CodeableConcept per repetition of ``x``."""
    system = _first_text(default_system)
    out = []
    for v in x.present():
        if isinstance(v, CodedConcept):
            out.append(v)
            continue
        if isinstance(v, Coding):
            out.append(CodedConcept(codings=(v,)))
            continue
        concept = ctx.terminology.resolve_concept(
            v if isinstance(v, FieldValue) else text_of(v), system
        )
        if concept is not None:
            out.append(concept)
    return out


@builtin("coding")
def fn_coding(ctx, x, system=None, display=None):
    """One Coding per repetition of ``x`` (the primary coding of a CWE)."""
    sys_token = _first_text(system)
    label = _first_text(display)
    out = []
    for v in x.present():
        if isinstance(v, FieldValue):
            concept = ctx.terminology.resolve_concept(v, sys_token)
            if concept is not None and concept.codings:
                out.append(concept.codings[0])
            continue
        coding = ctx.terminology.resolve_coding(text_of(v), sys_token, label)
        if coding is not None:
            out.append(coding)
    return out


@builtin("map_code")
def fn_map_code(ctx, x, map_name):
    name = _first_text(map_name)
    if name is None or not ctx.terminology.has_map(name):
        raise ValueError(f"unknown concept map {name!r}")
    mapped = [ctx.terminology.map_code(t, name) for t in _texts(x)]
    return [m for m in mapped if m is not None]


@builtin("system_url")
def fn_system_url(ctx, x):
    return _map_texts(x, ctx.terminology.system_url)


@builtin("system_id")
def fn_system_id(ctx, x):
    return _map_texts(x, _system_id)


# ------------------------------------------------------------------------------
# identifiers and references
# ------------------------------------------------------------------------------


def _as_ref(value: Any) -> Optional[ResourceRef]:
    if isinstance(value, ResourceRef):
        return value
    text = text_of(value)
    if text and "/" in text:
        rtype, _, rid = text.partition("/")
        if rtype and rid:
            return ResourceRef(rtype, rid)
    return None


@builtin("ref")
def fn_ref(ctx, x):
    refs = [_as_ref(v) for v in x.present()]
    return [r for r in refs if r is not None]


@builtin("relative_ref")
def fn_relative_ref(ctx, x):
    return [r.reference for r in fn_ref(ctx, x)]


@builtin("named_uuid")
def fn_named_uuid(ctx, x):
    """Name-based (MD5, version 3) UUID of the text, without a namespace."""

    def make(text: str) -> str:
        digest = hashlib.md5(text.encode("utf-8")).digest()
        return str(uuid.UUID(bytes=digest, version=3))

    return _map_texts(x, make)


@builtin("base64")
def fn_base64(ctx, x):
    return _map_texts(x, lambda t: _b64.b64encode(t.encode("utf-8")).decode("ascii"))


# ------------------------------------------------------------------------------
# HL7 data type helpers
# ------------------------------------------------------------------------------


def _joined(parts: Iterable[Optional[str]]) -> Optional[str]:
    text = " ".join(p for p in parts if p)
    return text or None


@builtin("name_text")
def fn_name_text(ctx, x):
    """Display text of each XPN: prefix, given, middle, family, suffix."""
    out = []
    for v in x.present():
        if not isinstance(v, FieldValue):
            out.append(text_of(v))
            continue
        out.append(
            _joined(
                (
                    _component(v, 5),
                    _component(v, 2),
                    _component(v, 3),
                    _component(v, 1),
                    _component(v, 4),
                )
            )
        )
    return [t for t in out if t]


@builtin("range_low")
def fn_range_low(ctx, x):
    text = _first_text(x)
    if text is None:
        return None
    low = text.split("-")[0].strip()
    return low or None


@builtin("range_high")
def fn_range_high(ctx, x):
    text = _first_text(x)
    if text is None:
        return None
    parts = text.split("-")
    if len(parts) != 2:
        return None
    return parts[1].strip() or None


def _format_phone(v: Any) -> Optional[str]:
    old = _component(v, 1)
    country = _component(v, 5)
    area = _component(v, 6)
    local = _component(v, 7)
    extension = _component(v, 8)
    unformatted = _component(v, 12)

    if local:
        prefix = ""
        if area:
            prefix = f"+{country} {area} " if country else f"({area}) "
        number = f"{local[:3]} {local[3:]}" if len(local) > 3 else local
        value = prefix + number
        if extension:
            value += f" ext. {extension}"
        return value
    return unformatted or old


@builtin("phone")
def fn_phone(ctx, x):
    """
    Display value of each XTN.

    Local number (XTN.7) with area (XTN.6) and country (XTN.5) codes and
    extension (XTN.8) when present, else the unformatted number (XTN.12),
    else the legacy text (XTN.1).
    """
    return [p for p in (_format_phone(v) for v in x.present()) if p]


def _flag(value: Optional[str]) -> str:
    return (value or "").upper()


@builtin("address_use")
def fn_address_use(ctx, x):
    """FHIR Address.use from XAD.7 (type), XAD.16 (temporary) and XAD.17 (bad)."""
    out = []
    for v in x.present():
        kind, temp, bad = _flag(_component(v, 7)), _flag(_component(v, 16)), _flag(_component(v, 17))
        if temp == "Y" or (not temp and kind == "C"):
            out.append("temp")
        elif bad == "Y" or (not bad and kind == "BA"):
            out.append("old")
        elif kind == "H":
            out.append("home")
        elif kind in ("B", "O"):
            out.append("work")
        elif kind == "BI":
            out.append("billing")
    return out


@builtin("address_type")
def fn_address_type(ctx, x):
    """FHIR Address.type from XAD.7 (type) and XAD.18 (address usage)."""
    out = []
    for v in x.present():
        kind, usage = _flag(_component(v, 7)), _flag(_component(v, 18))
        if usage == "M" or (not usage and kind == "M"):
            out.append("postal")
        elif usage == "V" or (not usage and kind == "SH"):
            out.append("physical")
    return out
