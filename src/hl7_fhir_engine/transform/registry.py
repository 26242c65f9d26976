# src/hl7_fhir_engine/transform/registry.py
"""
Registry for HL7 v2 to FHIR templates.

Provides:
- register() / register_resource() / register_datatype() to bind templates,
- lookup of the message template (and its flattened entries) by event,
- lookup of resource and datatype templates by name,
- load_all() to populate the registry from the packaged YAML templates plus
  optional user template directories.

The registry is process-wide and read-only once loaded; reset() exists for
test isolation. load_template_set() builds an independent TemplateSet for
callers that bring their own template directories.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .base import InlineTemplate, MessageTemplate, ResourceTemplate, TemplateEntry
from .loader import TemplateLoader

LOG = logging.getLogger(__name__)

# Map HL7 event string (e.g., "ADT^A01") to its message template.
_MESSAGES: Dict[str, MessageTemplate] = {}
_RESOURCES: Dict[str, ResourceTemplate] = {}
_DATATYPES: Dict[str, InlineTemplate] = {}

_LOADED = False


def register(template: MessageTemplate) -> MessageTemplate:
    """
    Register a message template for each of its trigger events.

    Parameters
    ----------
    template : MessageTemplate
        Template to register.

    Raises
    ------
    TypeError
        If template is not a MessageTemplate.
    ValueError
        If one of its events is already registered.

    Returns
    -------
    MessageTemplate
        The registered template.
    """
    if not isinstance(template, MessageTemplate):
        raise TypeError(
            f"Only MessageTemplate objects can be registered, got {type(template)}"
        )
    for event in template.events:
        if event in _MESSAGES:
            raise ValueError(f"Template already registered for event {event!r}")
    for event in template.events:
        _MESSAGES[event] = template
    return template


def register_resource(template: ResourceTemplate) -> ResourceTemplate:
    """Register (or replace) a resource template by name."""
    if not isinstance(template, ResourceTemplate):
        raise TypeError(
            f"Only ResourceTemplate objects can be registered, got {type(template)}"
        )
    _RESOURCES[template.name] = template
    return template


def register_datatype(template: InlineTemplate) -> InlineTemplate:
    """Register (or replace) a datatype template by name."""
    if not isinstance(template, InlineTemplate):
        raise TypeError(
            f"Only InlineTemplate objects can be registered, got {type(template)}"
        )
    _DATATYPES[template.name] = template
    return template


def available_events() -> List[str]:
    """
    List all registered HL7 event strings.

    Returns
    -------
    List[str]
        Sorted list of event identifiers (e.g., ["ADT^A01", "ADT^A04"]).
    """
    return sorted(_MESSAGES.keys())


def message_template(event: Optional[str]) -> Optional[MessageTemplate]:
    """Return the message template registered for ``event``, or None."""
    if not event:
        return None
    return _MESSAGES.get(event.upper())


def templates_for(event: Optional[str]) -> List[TemplateEntry]:
    """
    Ordered entries for an event, flattened through groups.

    Returns
    -------
    List[TemplateEntry]
        Empty when no template is registered for the event.
    """
    tmpl = message_template(event)
    return list(tmpl.flatten()) if tmpl else []


def resource_template(name: str) -> Optional[ResourceTemplate]:
    return _RESOURCES.get(name)


def datatype_template(name: str) -> Optional[InlineTemplate]:
    return _DATATYPES.get(name)


def reset() -> None:
    """Forget every registered template."""
    global _LOADED
    _MESSAGES.clear()
    _RESOURCES.clear()
    _DATATYPES.clear()
    _LOADED = False


def is_loaded() -> bool:
    return _LOADED


def load_all(extra_dirs: Iterable[Path] = ()) -> None:
    """
    Load the packaged templates plus user template directories.

    Files in ``extra_dirs`` override packaged files with the same kind and
    name. Idempotent: once loaded, later calls do nothing; call reset()
    first to reload.

    Raises
    ------
    TemplateError
        If any template is malformed.
    ValueError
        If two message templates claim the same event.
    """
    global _LOADED
    if _LOADED:
        return

    from .v2_to_fhir import template_root

    roots = [template_root()] + [Path(d) for d in extra_dirs]
    messages, resources, datatypes = TemplateLoader.from_directories(roots).load()

    for tmpl in datatypes.values():
        register_datatype(tmpl)
    for tmpl in resources.values():
        register_resource(tmpl)
    for tmpl in messages:
        register(tmpl)

    _LOADED = True
    LOG.debug(
        "Loaded %d message, %d resource and %d datatype templates",
        len(messages),
        len(resources),
        len(datatypes),
    )


# ------------------------------------------------------------------------------
# private template sets
# ------------------------------------------------------------------------------


@dataclass(frozen=True)
class TemplateSet:
    """
    Templates loaded outside the process-wide registry.

    Converters with user template directories keep their own set so they
    never disturb other converters in the same process.
    """

    messages: Dict[str, MessageTemplate]
    resources: Dict[str, ResourceTemplate]

    def available_events(self) -> List[str]:
        return sorted(self.messages.keys())

    def message_template(self, event: Optional[str]) -> Optional[MessageTemplate]:
        if not event:
            return None
        return self.messages.get(event.upper())

    def resource_template(self, name: str) -> Optional[ResourceTemplate]:
        return self.resources.get(name)


def load_template_set(extra_dirs: Iterable[Path] = ()) -> TemplateSet:
    """
    Load the packaged templates plus ``extra_dirs`` into a new TemplateSet.

    Raises
    ------
    TemplateError
        If any template is malformed.
    ValueError
        If two message templates claim the same event.
    """
    from .v2_to_fhir import template_root

    roots = [template_root()] + [Path(d) for d in extra_dirs]
    messages, resources, _ = TemplateLoader.from_directories(roots).load()

    by_event: Dict[str, MessageTemplate] = {}
    for tmpl in messages:
        for event in tmpl.events:
            if event in by_event:
                raise ValueError(f"Template already registered for event {event!r}")
            by_event[event] = tmpl
    return TemplateSet(by_event, dict(resources))
