# src/hl7_fhir_engine/transform/base.py
"""
Template data model for HL7 v2 -> FHIR conversions.

Templates are plain data evaluated by one interpreter (see builder.py and
engine.py); there are no per-resource transformer classes. Everything here
is immutable once loaded.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

from ..expression.nodes import EmptinessPolicy, Expression
from ..tree import GroupSpec

__all__ = [
    "FieldSpec",
    "GroupEntry",
    "Identity",
    "InlineTemplate",
    "MessageTemplate",
    "ResourceEntry",
    "ResourceTemplate",
    "TemplateEntry",
    "Variable",
]


@dataclass(frozen=True)
class Variable:
    """A template-level variable, evaluated before the fields."""

    name: str
    expression: Expression
    policy: EmptinessPolicy = EmptinessPolicy.BLANK


@dataclass(frozen=True)
class FieldSpec:
    """
    How one target field of a resource (or inline value) is produced.

    Attributes
    ----------
    path : tuple of str
        Dotted target path, e.g. ("period", "start").
    key : str
        Key as written in the template, including any ``@suffix``.
    expression : Expression
        Value expression; constants are compiled to literals.
    repeats : bool
        Keep every value (a list field) rather than the first.
    condition : Expression or None
        Gate; the field is skipped unless it evaluates truthy.
    policy : EmptinessPolicy
        Emptiness rule for conditionals in this field.
    required : bool
        An empty value cancels the enclosing resource or inline value.
    deferred : bool
        Evaluated when the enclosing scope closes.
    inline : InlineTemplate or None
        Applied once per value with that value as base.
    resource : str or None
        Referenced template built once per value; the field receives a
        reference to the retained resource.
    """

    path: Tuple[str, ...]
    key: str
    expression: Expression
    repeats: bool = False
    condition: Optional[Expression] = None
    policy: EmptinessPolicy = EmptinessPolicy.BLANK
    required: bool = False
    deferred: bool = False
    inline: Optional["InlineTemplate"] = None
    resource: Optional[str] = None

    @property
    def target(self) -> str:
        return ".".join(self.path)


@dataclass(frozen=True)
class InlineTemplate:
    """A datatype (or anonymous nested) template with no identity."""

    name: str
    fields: Tuple[FieldSpec, ...]
    vars: Tuple[Variable, ...] = ()
    condition: Optional[Expression] = None


@dataclass(frozen=True)
class Identity:
    """
    Deduplication identity of a referenced template.

    An empty ``fields`` tuple means positional identity.
    """

    fields: Tuple[str, ...] = ()

    @property
    def positional(self) -> bool:
        return not self.fields


@dataclass(frozen=True)
class ResourceTemplate:
    """A referenced template producing one FHIR resource type."""

    name: str
    resource_type: str
    fields: Tuple[FieldSpec, ...]
    vars: Tuple[Variable, ...] = ()
    identity: Identity = field(default_factory=Identity)
    source: Optional[str] = None


@dataclass(frozen=True)
class ResourceEntry:
    """
    One step of a message template.

    Attributes
    ----------
    name : str
        Scope variable under which the built resources are bound.
    template : str
        Resource template name.
    segment : str or None
        Governing segment; None evaluates once at the current cursor.
    repeats : bool
        Build once per governing-segment occurrence.
    required : bool
        Producing nothing is a structural error.
    condition : Expression or None
        Gate evaluated at the entry's cursor.
    """

    name: str
    template: str
    segment: Optional[str] = None
    repeats: bool = False
    required: bool = False
    condition: Optional[Expression] = None


@dataclass(frozen=True)
class GroupEntry:
    """A repeating segment group and the entries evaluated per occurrence."""

    group: GroupSpec
    entries: Tuple["Entry", ...]
    repeats: bool = True


Entry = Union[ResourceEntry, GroupEntry]


@dataclass(frozen=True)
class MessageTemplate:
    """Ordered entries for one or more trigger events."""

    name: str
    events: Tuple[str, ...]
    entries: Tuple[Entry, ...]
    source: Optional[str] = None

    def flatten(self) -> Tuple["TemplateEntry", ...]:
        out = []

        def walk(entries: Tuple[Entry, ...], groups: Tuple[str, ...]) -> None:
            for entry in entries:
                if isinstance(entry, GroupEntry):
                    walk(entry.entries, groups + (entry.group.name,))
                else:
                    out.append(TemplateEntry(entry, entry.repeats, groups))

        walk(self.entries, ())
        return tuple(out)


@dataclass(frozen=True)
class TemplateEntry:
    """Flattened view of a resource entry with its enclosing group path."""

    entry: ResourceEntry
    repeats: bool
    groups: Tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.entry.name
