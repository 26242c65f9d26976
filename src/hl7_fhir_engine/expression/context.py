# src/hl7_fhir_engine/expression/context.py
"""
Evaluation context handed to every expression.

The context is an immutable value: moving the cursor, pushing a scope or
changing the emptiness policy returns a new context, so nested evaluations
can never leak state back into their callers.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import tzinfo
from typing import Any, Optional, Tuple

from ..terminology import TerminologyResolver, default_resolver
from ..transform.scope import ScopeStack
from ..tree import Cursor, MessageTree, Segment
from .nodes import EmptinessPolicy


@dataclass(frozen=True)
class EvaluationContext:
    """
    Attributes
    ----------
    tree : MessageTree
        Message being converted.
    cursor : Cursor
        Active segment, group occurrence and base value.
    scope : ScopeStack
        Variable bindings visible at this point.
    terminology : TerminologyResolver
        Code system tables and concept maps.
    timezone : tzinfo or None
        Zone applied to timestamps without an offset.
    policy : EmptinessPolicy
        Emptiness rule used by conditionals.
    """

    tree: MessageTree
    cursor: Cursor = field(default_factory=Cursor)
    scope: ScopeStack = field(default_factory=ScopeStack.empty)
    terminology: TerminologyResolver = field(default_factory=default_resolver)
    timezone: Optional[tzinfo] = None
    policy: EmptinessPolicy = EmptinessPolicy.BLANK

    # --------------------------------------------------------------------------
    # derivation
    # --------------------------------------------------------------------------

    def at(self, **changes: Any) -> "EvaluationContext":
        """Return a copy with the given attributes replaced."""
        return replace(self, **changes)

    def at_segment(self, segment: Optional[Segment]) -> "EvaluationContext":
        return replace(self, cursor=replace(self.cursor, segment=segment, base=None))

    def at_base(self, base: Any) -> "EvaluationContext":
        return replace(self, cursor=replace(self.cursor, base=base))

    def with_scope(self, scope: ScopeStack) -> "EvaluationContext":
        return replace(self, scope=scope)

    def with_policy(self, policy: EmptinessPolicy) -> "EvaluationContext":
        if policy is self.policy:
            return self
        return replace(self, policy=policy)

    # --------------------------------------------------------------------------
    # segment resolution
    # --------------------------------------------------------------------------

    def segments_named(self, name: str) -> Tuple[Segment, ...]:
        """
        Resolve a segment id against the cursor.

        Order: the active segment itself, then the enclosing group
        occurrences from the innermost outwards, then the whole message.
        A segment that belongs to an enclosing group's structure is only
        looked up inside that occurrence, never in sibling occurrences.
        """
        active = self.cursor.segment
        if active is not None and active.name == name:
            return (active,)
        group = self.cursor.group
        while group is not None:
            found = group.find(name)
            if found or group.owns(name):
                return found
            group = group.parent
        return self.tree.occurrences(name)
