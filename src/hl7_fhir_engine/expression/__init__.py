# src/hl7_fhir_engine/expression/__init__.py
"""
Template expression language: parser, AST, evaluator and built-ins.

Typical use::

    ctx = EvaluationContext(tree)
    evaluate_text("PV1.45 | EVN.6", ctx.at_segment(pv1))
"""

from __future__ import annotations

from .context import EvaluationContext
from .evaluator import compile_expression, evaluate, evaluate_text, select
from .functions import available_functions, builtin, get_function
from .nodes import (
    EMPTY,
    Conditional,
    EmptinessPolicy,
    EvaluationResult,
    Expression,
    FunctionCall,
    Literal,
    PathRef,
    VariableRef,
    is_blank,
)
from .parser import parse_expression

__all__ = [
    "EMPTY",
    "Conditional",
    "EmptinessPolicy",
    "EvaluationContext",
    "EvaluationResult",
    "Expression",
    "FunctionCall",
    "Literal",
    "PathRef",
    "VariableRef",
    "available_functions",
    "builtin",
    "compile_expression",
    "evaluate",
    "evaluate_text",
    "get_function",
    "is_blank",
    "parse_expression",
    "select",
]
