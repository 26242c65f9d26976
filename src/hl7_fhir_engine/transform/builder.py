# src/hl7_fhir_engine/transform/builder.py
"""
Resource construction and deduplication.

The builder evaluates a resource template's fields against the current
context and hands the result to the arena, which keeps exactly one resource
per (resourceType, identity) key for the duration of one conversion.

Lifecycle of one build:

1. push a template frame (``$base`` plus the template ``vars``)
2. evaluate every non-deferred field in order; an empty required field
   cancels the build
3. compute the identity and retain the resource (or reuse the one already
   retained under the same key, dropping the new build)
4. queue the deferred fields of newly retained resources; they complete
   when the enclosing scope closes
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..exceptions import TemplateError
from ..expression.context import EvaluationContext
from ..expression.evaluator import evaluate
from ..expression.functions import text_of, truthy
from ..expression.nodes import Literal, is_blank
from ..terminology import CodedConcept, Coding
from ..tree import FieldValue, Segment
from .base import FieldSpec, InlineTemplate, ResourceEntry, ResourceTemplate, Variable
from .scope import Frame, ResourceRef, ScopeStack

LOG = logging.getLogger(__name__)

_AT_CURSOR = Literal(None)


# ------------------------------------------------------------------------------
# value types
# ------------------------------------------------------------------------------


@dataclass(eq=False)
class BuiltResource:
    """
    A retained resource.

    ``body`` is the wire-shaped resource (resourceType and id first). It is
    only mutated by the builder: by the template that created it and, later,
    by that template's deferred fields.
    """

    resource_type: str
    id: str
    identity: str
    body: Dict[str, Any]
    template: str

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(self.resource_type, self.id)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.resource_type, self.identity)

    def to_dict(self) -> Dict[str, Any]:
        return self.body


@dataclass
class PendingField:
    """A deferred field waiting for its enclosing scope to close."""

    resource: BuiltResource
    spec: FieldSpec
    ctx: EvaluationContext
    frame: Frame
    position: str


class ResourceArena:
    """
    Dedup table for one conversion.

    Resource ids are UUIDv5 values of the dedup key under a namespace drawn
    once per arena, so ids are stable within a run and unique across runs.
    """

    def __init__(self, namespace: Optional[uuid.UUID] = None):
        self.namespace = namespace or uuid.uuid4()
        self._table: Dict[Tuple[str, str], BuiltResource] = {}
        self._order: List[BuiltResource] = []

    def __len__(self) -> int:
        return len(self._order)

    @property
    def resources(self) -> List[BuiltResource]:
        """Retained resources in creation order."""
        return list(self._order)

    def get(self, resource_type: str, identity: str) -> Optional[BuiltResource]:
        return self._table.get((resource_type, identity))

    def retain(
        self,
        resource_type: str,
        identity: str,
        body: Mapping[str, Any],
        template: str,
    ) -> Tuple[BuiltResource, bool]:
        """
        Retain a build or return the resource already held under its key.

        Returns
        -------
        tuple
            (retained resource, True if it was created by this call)
        """
        existing = self._table.get((resource_type, identity))
        if existing is not None:
            LOG.debug("Reusing %s/%s for identity %s", resource_type, existing.id, identity)
            return existing, False

        rid = str(uuid.uuid5(self.namespace, f"{resource_type}|{identity}"))
        wire: Dict[str, Any] = {"resourceType": resource_type, "id": rid}
        wire.update((k, v) for k, v in body.items() if k not in ("resourceType", "id"))
        built = BuiltResource(resource_type, rid, identity, wire, template)
        self._table[built.key] = built
        self._order.append(built)
        return built, True


# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


def to_output(value: Any) -> Any:
    """
    Convert an evaluated value to its JSON shape, or None if it is blank.
    """
    if isinstance(value, BuiltResource):
        return value.ref.to_reference()
    if isinstance(value, ResourceRef):
        return value.to_reference()
    if isinstance(value, (CodedConcept, Coding)):
        out = value.to_dict()
        return out or None
    if isinstance(value, (FieldValue, Segment)):
        return text_of(value)
    if isinstance(value, (list, tuple)):
        items = [o for o in (to_output(v) for v in value) if o is not None]
        return items or None
    if is_blank(value):
        return None
    return value


def assign(body: Dict[str, Any], path: Sequence[str], values: List[Any], repeats: bool) -> None:
    """
    Write ``values`` at a dotted ``path`` inside ``body``.

    Single-valued paths are set once: a later write to a path that already
    holds a value is ignored. Repeating paths accumulate.
    """
    node = body
    for part in path[:-1]:
        child = node.get(part)
        if child is None:
            child = {}
            node[part] = child
        elif not isinstance(child, dict):
            LOG.debug("Cannot descend into %s: already holds a %s", part, type(child).__name__)
            return
        node = child

    leaf = path[-1]
    if repeats:
        current = node.get(leaf)
        if current is None:
            node[leaf] = list(values)
        elif isinstance(current, list):
            current.extend(values)
        return
    if leaf not in node:
        node[leaf] = values[0]


def _lookup(body: Mapping[str, Any], path: Sequence[str]) -> Any:
    node: Any = body
    for part in path:
        if not isinstance(node, Mapping):
            return None
        node = node.get(part)
    return node


# ------------------------------------------------------------------------------
# builder
# ------------------------------------------------------------------------------


class ResourceBuilder:
    """
    Build resources from templates for one conversion.

    Parameters
    ----------
    arena : ResourceArena
        Dedup table shared by every build of the conversion.
    templates : Callable[[str], ResourceTemplate or None]
        Lookup for templates named by ``resource:`` fields and entries.
    on_retained : Callable[[BuiltResource], None], optional
        Called once for each newly retained resource, in creation order.
    """

    def __init__(
        self,
        arena: ResourceArena,
        templates: Callable[[str], Optional[ResourceTemplate]],
        on_retained: Optional[Callable[[BuiltResource], None]] = None,
    ):
        self.arena = arena
        self._templates = templates
        self._on_retained = on_retained
        self._pending: List[PendingField] = []

    @property
    def pending(self) -> int:
        """Number of deferred fields waiting to complete."""
        return len(self._pending)

    def _template(self, name: str) -> ResourceTemplate:
        tmpl = self._templates(name)
        if tmpl is None:
            raise TemplateError(f"unknown resource template {name!r}")
        return tmpl

    # --------------------------------------------------------------------------
    # entries
    # --------------------------------------------------------------------------

    def build(self, entry: ResourceEntry, ctx: EvaluationContext) -> List[BuiltResource]:
        """
        Build the resources for one message-template entry.

        Parameters
        ----------
        entry : ResourceEntry
            Entry to evaluate.
        ctx : EvaluationContext
            Context at the enclosing block (message or group occurrence).

        Returns
        -------
        List[BuiltResource]
            Retained resources, in governing-segment order, without
            duplicates. Empty when the governing segment is absent or every
            build was cancelled.
        """
        template = self._template(entry.template)
        if entry.segment is not None:
            segments = ctx.segments_named(entry.segment)
            if not entry.repeats:
                segments = segments[:1]
            targets = [ctx.at_segment(seg) for seg in segments]
        else:
            targets = [ctx]

        results: List[BuiltResource] = []
        for target in targets:
            if entry.condition is not None and not truthy(evaluate(entry.condition, target)):
                LOG.debug("Skipping %s at %s: condition not met", entry.name, target.cursor.position)
                continue
            built = self.build_resource(
                template, target, f"{entry.name}:{target.cursor.position}"
            )
            if built is not None and built not in results:
                results.append(built)
        return results

    # --------------------------------------------------------------------------
    # templates
    # --------------------------------------------------------------------------

    def _bind_vars(
        self, variables: Sequence[Variable], ctx: EvaluationContext
    ) -> EvaluationContext:
        for var in variables:
            result = evaluate(var.expression, ctx.with_policy(var.policy))
            ctx = ctx.with_scope(ctx.scope.bind(var.name, result.values, append=False))
        return ctx

    def _base(self, ctx: EvaluationContext) -> Any:
        return ctx.cursor.base if ctx.cursor.base is not None else ctx.cursor.segment

    def build_resource(
        self, template: ResourceTemplate, ctx: EvaluationContext, position: str
    ) -> Optional[BuiltResource]:
        """
        Evaluate a resource template at ``ctx`` and retain the result.

        Returns
        -------
        BuiltResource or None
            The retained resource (possibly one built earlier with the same
            identity), or None when a required field is empty or no field
            produced a value.
        """
        frame_name = f"template:{template.name}"
        tctx = ctx.with_scope(ctx.scope.push(frame_name, {"base": self._base(ctx)}))
        tctx = self._bind_vars(template.vars, tctx)

        body: Dict[str, Any] = {"resourceType": template.resource_type}
        deferred: List[FieldSpec] = []
        for spec in template.fields:
            if spec.deferred:
                deferred.append(spec)
                continue
            if not self._apply(spec, tctx, body, position):
                LOG.debug(
                    "%s at %s not built: required field %s is empty",
                    template.name,
                    position,
                    spec.key,
                )
                return None

        if len(body) == 1:
            LOG.debug("%s at %s not built: no field has a value", template.name, position)
            return None

        identity = self._identity(template, body, position)
        built, created = self.arena.retain(
            template.resource_type, identity, body, template.name
        )
        if created:
            frame = tctx.scope.top
            for spec in deferred:
                self._pending.append(PendingField(built, spec, tctx, frame, position))
            if self._on_retained is not None:
                self._on_retained(built)
        return built

    def build_inline(
        self, template: InlineTemplate, ctx: EvaluationContext, position: str
    ) -> Optional[Dict[str, Any]]:
        """
        Evaluate an inline template; None when it produces nothing or a
        required field is empty.
        """
        ictx = ctx.with_scope(
            ctx.scope.push(f"inline:{template.name}", {"base": self._base(ctx)})
        )
        ictx = self._bind_vars(template.vars, ictx)
        if template.condition is not None and not truthy(evaluate(template.condition, ictx)):
            return None

        body: Dict[str, Any] = {}
        for spec in template.fields:
            if not self._apply(spec, ictx, body, position):
                return None
        return body or None

    # --------------------------------------------------------------------------
    # fields
    # --------------------------------------------------------------------------

    def _apply(
        self,
        spec: FieldSpec,
        ctx: EvaluationContext,
        body: Dict[str, Any],
        position: str,
    ) -> bool:
        """Evaluate one field into ``body``; False if it is required and empty."""
        fctx = ctx.with_policy(spec.policy)
        if spec.condition is not None and not truthy(evaluate(spec.condition, fctx)):
            return True
        values = self._values(spec, fctx, position)
        if not values:
            return not spec.required
        assign(body, spec.path, values, spec.repeats)
        return True

    def _values(self, spec: FieldSpec, ctx: EvaluationContext, position: str) -> List[Any]:
        if spec.inline is None and spec.resource is None:
            result = evaluate(spec.expression, ctx)
            outputs = [o for o in (to_output(v) for v in result.values) if o is not None]
            return outputs if spec.repeats else outputs[:1]

        if spec.expression == _AT_CURSOR:
            bases: List[Any] = [None]
        else:
            bases = list(evaluate(spec.expression, ctx).present())
        if not spec.repeats:
            bases = bases[:1]

        outputs = []
        for i, base in enumerate(bases, 1):
            sub = ctx if base is None else ctx.at_base(base)
            where = f"{position}/{spec.key}[{i}]"
            if spec.inline is not None:
                out = self.build_inline(spec.inline, sub, where)
            else:
                built = self.build_resource(self._template(spec.resource), sub, where)
                out = built.ref.to_reference() if built is not None else None
            if out is not None:
                outputs.append(out)
        return outputs

    def _identity(
        self, template: ResourceTemplate, body: Mapping[str, Any], position: str
    ) -> str:
        for name in template.identity.fields:
            value = _lookup(body, name.split("."))
            if not is_blank(value):
                return f"{name}=" + json.dumps(value, sort_keys=True, separators=(",", ":"))
        return f"{template.name}@{position}"

    # --------------------------------------------------------------------------
    # deferred fields
    # --------------------------------------------------------------------------

    def complete_deferred(self, scope: ScopeStack, start: int = 0) -> int:
        """
        Evaluate deferred fields queued since ``start`` against ``scope``.

        Each field is evaluated with its template frame pushed over the
        final scope of the enclosing block, so it sees every resource bound
        in that block.

        Returns
        -------
        int
            Number of fields completed.
        """
        done = 0
        while len(self._pending) > start:
            batch = self._pending[start:]
            del self._pending[start:]
            for item in batch:
                ctx = item.ctx.with_scope(scope.push(item.frame.name, item.frame.bindings))
                self._apply(item.spec, ctx, item.resource.body, item.position)
                done += 1
        return done
