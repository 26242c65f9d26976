# src/hl7_fhir_engine/expression/evaluator.py
"""
Evaluate expression ASTs against an EvaluationContext.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, List, Sequence

from ..tree import FieldValue, Segment
from .context import EvaluationContext
from .functions import get_function
from .nodes import (
    EMPTY,
    Conditional,
    EvaluationResult,
    Expression,
    FunctionCall,
    Literal,
    PathRef,
    VariableRef,
)
from .parser import parse_expression

LOG = logging.getLogger(__name__)


# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


def select(value: Any, indices: Sequence[int]) -> List[Any]:
    """
    Walk ``indices`` down from ``value``.

    A Segment is indexed by field (yielding every repetition), a FieldValue
    by component and a plain string is its own component 1. Coordinates
    past the end yield nothing.
    """
    if not indices:
        return [value]
    i, rest = indices[0], indices[1:]

    if isinstance(value, Segment):
        reps = value.field(i)
        if reps is None:
            return []
        out: List[Any] = []
        for rep in reps:
            out.extend(select(rep, rest))
        return out
    if isinstance(value, FieldValue):
        comp = value.component(i)
        return [] if comp is None else select(comp, rest)
    if isinstance(value, str):
        return select(value, rest) if i == 1 else []
    return []


def _eval_path(node: PathRef, ctx: EvaluationContext) -> EvaluationResult:
    if node.segment is None:
        base = ctx.cursor.base if ctx.cursor.base is not None else ctx.cursor.segment
        if base is None:
            return EMPTY
        return EvaluationResult(tuple(select(base, node.indices)))

    values: List[Any] = []
    for seg in ctx.segments_named(node.segment):
        values.extend(select(seg, node.indices))
    return EvaluationResult(tuple(values))


def _eval_variable(node: VariableRef, ctx: EvaluationContext) -> EvaluationResult:
    bound = ctx.scope.lookup(node.name)
    if bound is None:
        return EMPTY
    items = bound if isinstance(bound, tuple) else (bound,)
    if not node.indices:
        return EvaluationResult(items)
    values: List[Any] = []
    for item in items:
        values.extend(select(item, node.indices))
    return EvaluationResult(tuple(values))


def _eval_call(node: FunctionCall, ctx: EvaluationContext) -> EvaluationResult:
    fn = get_function(node.name)
    if fn is None:
        # Parsed trees are checked; only hand-built nodes get here.
        raise KeyError(f"unknown function {node.name!r}")
    args = [evaluate(a, ctx) for a in node.args]
    try:
        return fn(ctx, args)
    except (ValueError, ArithmeticError) as e:
        LOG.warning("%s at %s evaluated to empty: %s", node, ctx.cursor.position, e)
        return EMPTY


# ------------------------------------------------------------------------------
# public API
# ------------------------------------------------------------------------------


def evaluate(expr: Expression, ctx: EvaluationContext) -> EvaluationResult:
    """
    Evaluate an expression.

    Parameters
    ----------
    expr : Expression
        Node returned by ``parse_expression``.
    ctx : EvaluationContext
        Message, cursor, scope and terminology to evaluate against.

    Returns
    -------
    EvaluationResult
        Never raises for missing data; absent coordinates and values that
        cannot be converted give an empty result.
    """
    if isinstance(expr, Literal):
        return EvaluationResult.of(expr.value)
    if isinstance(expr, PathRef):
        return _eval_path(expr, ctx)
    if isinstance(expr, VariableRef):
        return _eval_variable(expr, ctx)
    if isinstance(expr, Conditional):
        for option in expr.options:
            result = evaluate(option, ctx)
            if not result.is_empty(ctx.policy):
                return result
        return EMPTY
    if isinstance(expr, FunctionCall):
        return _eval_call(expr, ctx)
    raise TypeError(f"not an expression node: {type(expr).__name__}")


@lru_cache(maxsize=1024)
def compile_expression(text: str) -> Expression:
    """Parse ``text`` once; later calls reuse the tree."""
    return parse_expression(text)


def evaluate_text(text: str, ctx: EvaluationContext) -> EvaluationResult:
    """Parse (cached) and evaluate expression text."""
    return evaluate(compile_expression(text), ctx)
