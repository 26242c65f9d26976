# src/hl7_fhir_engine/transform/engine.py
"""
Run one message template against one message.

Scope layout during a conversion (outermost first)::

    properties          option property bag ($tenant, ...)
    message             resources of top-level entries ($Patient, ...)
    ORDER[1]            one frame per group occurrence
    template:<name>     $base and template vars, one per build

Deferred fields queued inside a block complete when that block (the message
or one group occurrence) finishes, against the block's final scope.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import tzinfo
from typing import Callable, List, Mapping, Optional, Tuple

from ..exceptions import MissingRequiredResourceError
from ..expression.context import EvaluationContext
from ..terminology import TerminologyResolver, default_resolver
from ..tree import Cursor, GroupOccurrence, MessageTree
from .base import Entry, GroupEntry, MessageTemplate, ResourceTemplate
from .builder import BuiltResource, ResourceArena, ResourceBuilder
from .bundle import BundleAssembler
from .scope import ScopeStack

LOG = logging.getLogger(__name__)

PROPERTIES_FRAME = "properties"
MESSAGE_FRAME = "message"


@dataclass
class ConversionRun:
    """All mutable state of one conversion."""

    tree: MessageTree
    arena: ResourceArena
    builder: ResourceBuilder
    assembler: BundleAssembler = field(default_factory=BundleAssembler)

    @property
    def resources(self) -> List[BuiltResource]:
        return self.assembler.resources


class MessageEngine:
    """
    Drive the builder through a message template's entries.

    Parameters
    ----------
    template : MessageTemplate
        Entries to evaluate.
    templates : Callable[[str], ResourceTemplate or None]
        Resource template lookup, usually ``registry.resource_template``.
    terminology : TerminologyResolver, optional
        Defaults to the packaged tables.
    timezone : tzinfo, optional
        Zone applied to timestamps without an offset.
    properties : Mapping[str, str], optional
        Values bound in the outermost scope frame.
    """

    def __init__(
        self,
        template: MessageTemplate,
        templates: Callable[[str], Optional[ResourceTemplate]],
        terminology: Optional[TerminologyResolver] = None,
        timezone: Optional[tzinfo] = None,
        properties: Optional[Mapping[str, str]] = None,
    ):
        self.template = template
        self._templates = templates
        self.terminology = terminology or default_resolver()
        self.timezone = timezone
        self.properties = dict(properties or {})

    def run(self, tree: MessageTree, namespace: Optional[uuid.UUID] = None) -> ConversionRun:
        """
        Convert one message.

        Parameters
        ----------
        tree : MessageTree
            Parsed message.
        namespace : uuid.UUID, optional
            Namespace for resource ids; random per run by default.

        Returns
        -------
        ConversionRun
            Retained resources (creation order) and the run's arena.

        Raises
        ------
        MissingRequiredResourceError
            If a required entry produced no resource.
        """
        assembler = BundleAssembler()
        arena = ResourceArena(namespace)
        builder = ResourceBuilder(arena, self._templates, on_retained=assembler.add)
        run = ConversionRun(tree, arena, builder, assembler)

        scope = (
            ScopeStack.empty()
            .push(PROPERTIES_FRAME, self.properties)
            .push(MESSAGE_FRAME)
        )
        ctx = EvaluationContext(
            tree,
            scope=scope,
            terminology=self.terminology,
            timezone=self.timezone,
        )
        ctx = self._run_block(self.template.entries, ctx, builder, None)
        ctx.scope.pop(MESSAGE_FRAME)

        LOG.info(
            "Converted %s with template %s into %d resources",
            tree.message_type,
            self.template.name,
            len(assembler),
        )
        return run

    def _run_block(
        self,
        entries: Tuple[Entry, ...],
        ctx: EvaluationContext,
        builder: ResourceBuilder,
        within: Optional[GroupOccurrence],
    ) -> EvaluationContext:
        start = builder.pending
        for entry in entries:
            if isinstance(entry, GroupEntry):
                for occ in ctx.tree.groups(entry.group, within):
                    frame = occ.position
                    gctx = ctx.at(
                        cursor=Cursor(group=occ), scope=ctx.scope.push(frame)
                    )
                    gctx = self._run_block(entry.entries, gctx, builder, occ)
                    ctx = ctx.with_scope(gctx.scope.pop(frame))
                continue

            built = builder.build(entry, ctx)
            if entry.required and not built:
                raise MissingRequiredResourceError(
                    f"Required {entry.name} could not be built "
                    f"(template {entry.template}, segment {entry.segment or '-'})",
                    message_id=ctx.tree.control_id,
                )
            if built:
                ctx = ctx.with_scope(ctx.scope.bind(entry.name, [b.ref for b in built]))
            LOG.debug("%s: %d resource(s)", entry.name, len(built))

        builder.complete_deferred(ctx.scope, start)
        return ctx
