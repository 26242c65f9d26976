# src/hl7_fhir_engine/expression/nodes.py
"""
Expression AST and evaluation results.

Every template expression compiles to one of five node kinds:

- Literal: a constant (string, number, boolean, None or a tuple of those)
- PathRef: segment/field/component/subcomponent coordinates, absolute
  ("PID.3.1") or relative to the current base value (".1")
- VariableRef: a name bound in an enclosing scope ("$Patient"), optionally
  followed by relative coordinates ("$code.2")
- Conditional: ordered alternatives; the first non-empty one wins
- FunctionCall: a named built-in applied to evaluated arguments

Infix operators in the source text (==, !=, in, and, or, not) are parsed into
FunctionCall nodes, so evaluation only ever deals with these five kinds.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator, Mapping, Optional, Tuple, Union

# ------------------------------------------------------------------------------
# emptiness
# ------------------------------------------------------------------------------

NULL_TOKEN = '""'


class EmptinessPolicy(str, Enum):
    """
    What counts as "no value" when choosing between alternatives.

    BLANK
        Missing coordinates, blank text and the HL7 null token ``""``.
    ABSENT
        Only coordinates that do not exist in the message. A field that is
        present but blank still counts as a value.
    """

    BLANK = "blank"
    ABSENT = "absent"


def is_blank(value: Any) -> bool:
    """
    Return True if ``value`` carries no data.

    Strings are blank when empty, whitespace or the HL7 null token. Mappings
    and sequences are blank when every member is blank. Objects may define
    their own ``is_blank()``.
    """
    if value is None:
        return True
    if isinstance(value, str):
        text = value.strip()
        return text == "" or text == NULL_TOKEN
    if isinstance(value, bool) or isinstance(value, (int, float)):
        return False
    if isinstance(value, Mapping):
        return all(is_blank(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return all(is_blank(v) for v in value)
    check = getattr(value, "is_blank", None)
    if callable(check):
        return bool(check())
    return False


# ------------------------------------------------------------------------------
# results
# ------------------------------------------------------------------------------


@dataclass(frozen=True)
class EvaluationResult:
    """
    Outcome of evaluating an expression: zero, one or many values.

    No values means the expression found nothing (absence). Values may still
    be blank; ``is_empty`` decides under a given policy.
    """

    values: Tuple[Any, ...] = ()

    @classmethod
    def of(cls, value: Any) -> "EvaluationResult":
        """
        Normalize a function return value or binding into a result.

        None becomes empty, lists and tuples are flattened one level with
        None members dropped, anything else becomes a single value.
        """
        if isinstance(value, EvaluationResult):
            return value
        if value is None:
            return EMPTY
        if isinstance(value, (list, tuple)):
            flat = []
            for v in value:
                if isinstance(v, EvaluationResult):
                    flat.extend(v.values)
                elif v is not None:
                    flat.append(v)
            return cls(tuple(flat)) if flat else EMPTY
        return cls((value,))

    def is_empty(self, policy: EmptinessPolicy = EmptinessPolicy.BLANK) -> bool:
        if not self.values:
            return True
        if policy is EmptinessPolicy.ABSENT:
            return False
        return all(is_blank(v) for v in self.values)

    def present(self) -> Tuple[Any, ...]:
        """Values that are not blank, in order."""
        return tuple(v for v in self.values if not is_blank(v))

    @property
    def first(self) -> Any:
        """First non-blank value, or None."""
        for v in self.values:
            if not is_blank(v):
                return v
        return None

    def __iter__(self) -> Iterator[Any]:
        return iter(self.values)

    def __len__(self) -> int:
        return len(self.values)


EMPTY = EvaluationResult()


# ------------------------------------------------------------------------------
# nodes
# ------------------------------------------------------------------------------


@dataclass(frozen=True)
class Literal:
    value: Any

    def __str__(self) -> str:
        return repr(self.value)


@dataclass(frozen=True)
class PathRef:
    """``segment`` is None for paths relative to the cursor's base value."""

    segment: Optional[str]
    indices: Tuple[int, ...] = ()

    def __str__(self) -> str:
        tail = "".join(f".{i}" for i in self.indices)
        return f"{self.segment or ''}{tail}"


@dataclass(frozen=True)
class VariableRef:
    name: str
    indices: Tuple[int, ...] = ()

    def __str__(self) -> str:
        return "$" + self.name + "".join(f".{i}" for i in self.indices)


@dataclass(frozen=True)
class Conditional:
    options: Tuple["Expression", ...]

    def __str__(self) -> str:
        return " | ".join(str(o) for o in self.options)


@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: Tuple["Expression", ...] = ()

    def __str__(self) -> str:
        return f"{self.name}({', '.join(str(a) for a in self.args)})"


Expression = Union[Literal, PathRef, VariableRef, Conditional, FunctionCall]
