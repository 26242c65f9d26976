# src/hl7_fhir_engine/expression/parser.py
"""
Parser for the template expression language.

Grammar (lowest to highest precedence)::

    expression   := alternative
    alternative  := disjunction ("|" disjunction)*
    disjunction  := conjunction ("or" conjunction)*
    conjunction  := negation ("and" negation)*
    negation     := "not" negation | comparison
    comparison   := primary (("==" | "!=" | "in" | "not" "in") primary)?
    primary      := STRING | NUMBER | "true" | "false" | "null"
                  | PATH | RELPATH | VARIABLE
                  | NAME "(" [expression ("," expression)*] ")"
                  | "(" expression ")"
                  | "[" [expression ("," expression)*] "]"

Paths are ``SEG.field[.component[.subcomponent]]`` with a three character
upper-case segment id, or ``.n[.n[.n]]`` relative to the current base value.
Function names are checked against the built-in registry, including arity, so
that a bad template fails when it is loaded rather than when a message hits
it.
"""

from __future__ import annotations

import re
from typing import List, NamedTuple, Optional, Tuple

from ..exceptions import TemplateError
from .functions import get_function
from .nodes import (
    Conditional,
    Expression,
    FunctionCall,
    Literal,
    PathRef,
    VariableRef,
)

# ------------------------------------------------------------------------------
# globals
# ------------------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
      (?P<ws>\s+)
    | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
    | (?P<path>[A-Z][A-Z0-9]{2}(?:\.\d+)*(?![A-Za-z0-9_]))
    | (?P<relpath>\.\d+(?:\.\d+)*)
    | (?P<number>-?\d+(?:\.\d+)?(?![A-Za-z0-9_]))
    | (?P<var>\$[A-Za-z_][A-Za-z0-9_]*(?:\.\d+)*)
    | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
    | (?P<op>==|!=|\||\(|\)|,|\[|\])
    """,
    re.VERBOSE,
)

_KEYWORDS = {"and", "or", "not", "in", "true", "false", "null"}
_MAX_SEGMENT_DEPTH = 3  # field, component, subcomponent
_MAX_RELATIVE_DEPTH = 3


class Token(NamedTuple):
    kind: str
    text: str
    pos: int


# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


def tokenize(text: str) -> List[Token]:
    """
    Split expression text into tokens.

    Raises
    ------
    TemplateError
        On characters that do not start any token.
    """
    tokens: List[Token] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None:
            raise TemplateError(
                f"unexpected character {text[pos]!r} at offset {pos} in {text!r}"
            )
        kind = m.lastgroup or ""
        if kind != "ws":
            tokens.append(Token(kind, m.group(), pos))
        pos = m.end()
    return tokens


def _indices(parts: List[str], text: str, limit: int) -> Tuple[int, ...]:
    values = tuple(int(p) for p in parts if p)
    if len(values) > limit:
        raise TemplateError(f"path {text!r} is nested deeper than {limit} levels")
    if any(v < 1 for v in values):
        raise TemplateError(f"path {text!r} uses a zero index; HL7 positions start at 1")
    return values


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.i = 0

    # token access ------------------------------------------------------------

    def _peek(self, offset: int = 0) -> Optional[Token]:
        j = self.i + offset
        return self.tokens[j] if j < len(self.tokens) else None

    def _is(self, kind: str, text: Optional[str] = None, offset: int = 0) -> bool:
        tok = self._peek(offset)
        if tok is None or tok.kind != kind:
            return False
        return text is None or tok.text == text

    def _next(self) -> Token:
        tok = self._peek()
        if tok is None:
            raise TemplateError(f"unexpected end of expression {self.text!r}")
        self.i += 1
        return tok

    def _expect(self, kind: str, text: str) -> Token:
        tok = self._next()
        if tok.kind != kind or tok.text != text:
            raise TemplateError(
                f"expected {text!r} at offset {tok.pos} in {self.text!r}, "
                f"got {tok.text!r}"
            )
        return tok

    # grammar -----------------------------------------------------------------

    def parse(self) -> Expression:
        if not self.tokens:
            raise TemplateError("expression is empty")
        expr = self._alternative()
        tok = self._peek()
        if tok is not None:
            raise TemplateError(
                f"unexpected {tok.text!r} at offset {tok.pos} in {self.text!r}"
            )
        return expr

    def _alternative(self) -> Expression:
        options = [self._disjunction()]
        while self._is("op", "|"):
            self._next()
            options.append(self._disjunction())
        return options[0] if len(options) == 1 else Conditional(tuple(options))

    def _disjunction(self) -> Expression:
        items = [self._conjunction()]
        while self._is("name", "or"):
            self._next()
            items.append(self._conjunction())
        return items[0] if len(items) == 1 else FunctionCall("any", tuple(items))

    def _conjunction(self) -> Expression:
        items = [self._negation()]
        while self._is("name", "and"):
            self._next()
            items.append(self._negation())
        return items[0] if len(items) == 1 else FunctionCall("all", tuple(items))

    def _negation(self) -> Expression:
        if self._is("name", "not") and not self._is("name", "in", 1):
            self._next()
            return FunctionCall("not", (self._negation(),))
        return self._comparison()

    def _comparison(self) -> Expression:
        left = self._primary()
        if self._is("op", "=="):
            self._next()
            return FunctionCall("eq", (left, self._primary()))
        if self._is("op", "!="):
            self._next()
            return FunctionCall("ne", (left, self._primary()))
        if self._is("name", "in"):
            self._next()
            return FunctionCall("in", (left, self._primary()))
        if self._is("name", "not") and self._is("name", "in", 1):
            self._next()
            self._next()
            return FunctionCall("not", (FunctionCall("in", (left, self._primary())),))
        return left

    def _primary(self) -> Expression:
        tok = self._next()
        kind, text = tok.kind, tok.text

        if kind == "string":
            return Literal(_unquote(text))
        if kind == "number":
            return Literal(float(text) if "." in text else int(text))
        if kind == "path":
            seg, *rest = text.split(".")
            return PathRef(seg, _indices(rest, text, _MAX_SEGMENT_DEPTH))
        if kind == "relpath":
            return PathRef(None, _indices(text.split(".")[1:], text, _MAX_RELATIVE_DEPTH))
        if kind == "var":
            name, *rest = text[1:].split(".")
            return VariableRef(name, _indices(rest, text, _MAX_RELATIVE_DEPTH))
        if kind == "op" and text == "(":
            inner = self._alternative()
            self._expect("op", ")")
            return inner
        if kind == "op" and text == "[":
            items = self._arguments("]")
            if all(isinstance(i, Literal) for i in items):
                return Literal(tuple(i.value for i in items))  # type: ignore[union-attr]
            return FunctionCall("list", tuple(items))
        if kind == "name":
            if text == "true":
                return Literal(True)
            if text == "false":
                return Literal(False)
            if text == "null":
                return Literal(None)
            if text in _KEYWORDS:
                raise TemplateError(
                    f"misplaced keyword {text!r} at offset {tok.pos} in {self.text!r}"
                )
            if not self._is("op", "("):
                raise TemplateError(
                    f"unknown identifier {text!r} at offset {tok.pos} in {self.text!r} "
                    f"(paths need a three character segment id, strings need quotes)"
                )
            self._next()
            return self._call(text, self._arguments(")"))

        raise TemplateError(f"unexpected {text!r} at offset {tok.pos} in {self.text!r}")

    def _arguments(self, closer: str) -> List[Expression]:
        items: List[Expression] = []
        if self._is("op", closer):
            self._next()
            return items
        while True:
            items.append(self._alternative())
            if self._is("op", ","):
                self._next()
                continue
            self._expect("op", closer)
            return items

    def _call(self, name: str, args: List[Expression]) -> FunctionCall:
        fn = get_function(name)
        if fn is None:
            raise TemplateError(f"unknown function {name!r} in {self.text!r}")
        if not fn.accepts(len(args)):
            raise TemplateError(
                f"function {name!r} takes {fn.arity_text()} argument(s), "
                f"got {len(args)} in {self.text!r}"
            )
        return FunctionCall(name, tuple(args))


# ------------------------------------------------------------------------------
# public API
# ------------------------------------------------------------------------------


def parse_expression(text: str) -> Expression:
    """
    Compile expression text into an AST.

    Parameters
    ----------
    text : str
        Expression source, e.g. ``"PV1.45 | EVN.6 | EVN.2"``.

    Returns
    -------
    Expression
        Root node.

    Raises
    ------
    TypeError
        If text is not a string.
    TemplateError
        If the text is malformed, uses an unknown function, or calls a
        function with the wrong number of arguments.
    """
    if not isinstance(text, str):
        raise TypeError(f"expression must be str, got {type(text).__name__}")
    return _Parser(text).parse()
