# src/hl7_fhir_engine/transform/loader.py
"""
YAML template loading and validation.

Three kinds of documents are read, one template per file, named by the file
stem:

- messages/*.yml: trigger events, segment groups and ordered entries
- resources/*.yml: referenced templates (one FHIR resource type each)
- datatypes/*.yml: inline templates embedded in other templates

All expressions are compiled while loading, so authoring errors (bad syntax,
unknown functions, wrong arity, unknown datatype or resource names, circular
references) surface as TemplateError before any message is converted.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

import yaml

from ..exceptions import TemplateError
from ..expression.nodes import EmptinessPolicy, Expression, Literal
from ..expression.parser import parse_expression
from ..hl7_parser import normalize_event
from ..tree import GroupSpec
from .base import (
    Entry,
    FieldSpec,
    GroupEntry,
    Identity,
    InlineTemplate,
    MessageTemplate,
    ResourceEntry,
    ResourceTemplate,
    Variable,
)

LOG = logging.getLogger(__name__)

# ------------------------------------------------------------------------------
# globals
# ------------------------------------------------------------------------------

KINDS = ("messages", "resources", "datatypes")

_TARGET_RE = re.compile(
    r"^[A-Za-z][A-Za-z0-9]*(\.[A-Za-z][A-Za-z0-9]*)*(@[A-Za-z0-9_]+)?$"
)
_SEGMENT_RE = re.compile(r"^[A-Z][A-Z0-9]{2}$")
_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_FIELD_KEYS = {
    "value",
    "const",
    "repeats",
    "condition",
    "empty",
    "required",
    "deferred",
    "datatype",
    "fields",
    "resource",
}
_RESOURCE_KEYS = {"resourceType", "description", "vars", "identity", "fields"}
_DATATYPE_KEYS = {"description", "vars", "condition", "fields"}
_MESSAGE_KEYS = {"description", "events", "groups", "entries"}
_ENTRY_KEYS = {"name", "template", "segment", "repeats", "required", "condition"}
_GROUP_ENTRY_KEYS = {"group", "entries"}

RawDoc = Tuple[Mapping[str, Any], str]  # (data, source)


# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


def read_template_file(path: Path) -> Mapping[str, Any]:
    """
    Read one YAML template document.

    Raises
    ------
    TemplateError
        If the file is not valid YAML or not a mapping at top level.
    """
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise TemplateError(f"invalid YAML: {e}", str(path)) from e
    if not isinstance(data, Mapping):
        raise TemplateError(
            f"template must contain a mapping at top level, got {type(data).__name__}",
            str(path),
        )
    return data


def _compile(text: Any, source: str, location: str) -> Expression:
    if isinstance(text, (int, float)) and not isinstance(text, bool):
        raise TemplateError(
            f"bare number {text!r} is ambiguous; quote relative paths ('.3')",
            source,
            location,
        )
    if not isinstance(text, str):
        raise TemplateError(
            f"expression must be a string, got {type(text).__name__}", source, location
        )
    try:
        return parse_expression(text)
    except TemplateError as e:
        raise TemplateError(str(e), source, location) from e


def _check_keys(data: Mapping[str, Any], allowed: Set[str], source: str, location: str) -> None:
    unknown = sorted(str(k) for k in data if k not in allowed)
    if unknown:
        raise TemplateError(
            f"unknown key(s) {', '.join(unknown)}; allowed: {', '.join(sorted(allowed))}",
            source,
            location,
        )


def _flag(data: Mapping[str, Any], key: str, source: str, location: str) -> bool:
    value = data.get(key, False)
    if not isinstance(value, bool):
        raise TemplateError(f"{key!r} must be true or false", source, location)
    return value


def _policy(value: Any, source: str, location: str) -> EmptinessPolicy:
    if value is None:
        return EmptinessPolicy.BLANK
    try:
        return EmptinessPolicy(str(value))
    except ValueError as e:
        raise TemplateError(
            f"empty must be 'blank' or 'absent', got {value!r}", source, location
        ) from e


# ------------------------------------------------------------------------------
# loader
# ------------------------------------------------------------------------------


class TemplateLoader:
    """
    Build template objects from raw YAML documents.

    Parameters
    ----------
    messages, resources, datatypes : Mapping[str, RawDoc]
        Raw documents keyed by template name.
    """

    def __init__(
        self,
        messages: Mapping[str, RawDoc],
        resources: Mapping[str, RawDoc],
        datatypes: Mapping[str, RawDoc],
    ):
        self._raw_messages = dict(messages)
        self._raw_resources = dict(resources)
        self._raw_datatypes = dict(datatypes)
        self._datatypes: Dict[str, InlineTemplate] = {}
        self._resolving: List[str] = []

    @classmethod
    def from_directories(cls, directories: List[Path]) -> "TemplateLoader":
        """
        Collect documents from template roots, later roots winning.

        Each root may contain ``messages/``, ``resources/`` and
        ``datatypes/`` subdirectories with ``*.yml`` or ``*.yaml`` files.
        """
        found: Dict[str, Dict[str, RawDoc]] = {k: {} for k in KINDS}
        for root in directories:
            for kind in KINDS:
                folder = root / kind
                if not folder.is_dir():
                    continue
                for path in sorted(folder.iterdir()):
                    if path.suffix not in (".yml", ".yaml") or path.name.startswith("_"):
                        continue
                    if path.stem in found[kind]:
                        LOG.debug("Template %s/%s overridden by %s", kind, path.stem, path)
                    found[kind][path.stem] = (read_template_file(path), str(path))
        return cls(found["messages"], found["resources"], found["datatypes"])

    # --------------------------------------------------------------------------
    # public
    # --------------------------------------------------------------------------

    def load(
        self,
    ) -> Tuple[List[MessageTemplate], Dict[str, ResourceTemplate], Dict[str, InlineTemplate]]:
        """
        Build and cross-check every template.

        Returns
        -------
        tuple
            (message templates, resource templates by name, datatype
            templates by name)

        Raises
        ------
        TemplateError
            On any authoring error.
        """
        for name in self._raw_datatypes:
            self.datatype(name)
        resources = {name: self.resource(name) for name in self._raw_resources}
        self._check_resource_cycles(resources)
        messages = [self.message(name) for name in self._raw_messages]
        for msg in messages:
            self._check_entries(msg.entries, resources, msg.source or msg.name)
        return messages, resources, dict(self._datatypes)

    def datatype(self, name: str) -> InlineTemplate:
        if name in self._datatypes:
            return self._datatypes[name]
        if name not in self._raw_datatypes:
            raise TemplateError(f"unknown datatype template {name!r}")
        if name in self._resolving:
            chain = " -> ".join(self._resolving + [name])
            raise TemplateError(f"circular datatype reference: {chain}")

        data, source = self._raw_datatypes[name]
        _check_keys(data, _DATATYPE_KEYS, source, "")
        self._resolving.append(name)
        try:
            tmpl = InlineTemplate(
                name=name,
                vars=self._vars(data.get("vars"), source),
                fields=self._fields(data.get("fields"), source, "fields", inline=True),
                condition=(
                    _compile(data["condition"], source, "condition")
                    if data.get("condition") is not None
                    else None
                ),
            )
        finally:
            self._resolving.pop()
        self._datatypes[name] = tmpl
        return tmpl

    def resource(self, name: str) -> ResourceTemplate:
        if name not in self._raw_resources:
            raise TemplateError(f"unknown resource template {name!r}")
        data, source = self._raw_resources[name]
        _check_keys(data, _RESOURCE_KEYS, source, "")

        rtype = data.get("resourceType")
        if not isinstance(rtype, str) or not rtype:
            raise TemplateError("resourceType is required", source, "resourceType")

        fields = self._fields(data.get("fields"), source, "fields", inline=False)
        identity = self._identity(data.get("identity"), fields, source)
        return ResourceTemplate(
            name=name,
            resource_type=rtype,
            vars=self._vars(data.get("vars"), source),
            fields=fields,
            identity=identity,
            source=source,
        )

    def message(self, name: str) -> MessageTemplate:
        if name not in self._raw_messages:
            raise TemplateError(f"unknown message template {name!r}")
        data, source = self._raw_messages[name]
        _check_keys(data, _MESSAGE_KEYS, source, "")

        raw_events = data.get("events")
        if not isinstance(raw_events, list) or not raw_events:
            raise TemplateError("events must be a non-empty list", source, "events")
        events = []
        for i, raw in enumerate(raw_events):
            event = normalize_event(raw)
            if event is None:
                raise TemplateError(
                    f"event must look like 'ADT^A01', got {raw!r}", source, f"events[{i}]"
                )
            events.append(event)

        groups = self._groups(data.get("groups"), source)
        entries = self._entries(data.get("entries"), groups, source, "entries")
        return MessageTemplate(
            name=name, events=tuple(events), entries=entries, source=source
        )

    # --------------------------------------------------------------------------
    # pieces
    # --------------------------------------------------------------------------

    def _vars(self, data: Any, source: str) -> Tuple[Variable, ...]:
        if data is None:
            return ()
        if not isinstance(data, Mapping):
            raise TemplateError("vars must be a mapping", source, "vars")
        out = []
        for name, spec in data.items():
            location = f"vars.{name}"
            if not isinstance(name, str) or not _NAME_RE.match(name):
                raise TemplateError(f"invalid variable name {name!r}", source, location)
            policy = EmptinessPolicy.BLANK
            if isinstance(spec, Mapping):
                _check_keys(spec, {"value", "empty"}, source, location)
                policy = _policy(spec.get("empty"), source, location)
                spec = spec.get("value")
            out.append(Variable(name, _compile(spec, source, location), policy))
        return tuple(out)

    def _fields(
        self, data: Any, source: str, location: str, inline: bool
    ) -> Tuple[FieldSpec, ...]:
        if not isinstance(data, Mapping) or not data:
            raise TemplateError("fields must be a non-empty mapping", source, location)
        return tuple(
            self._field(str(key), spec, source, f"{location}.{key}", inline)
            for key, spec in data.items()
        )

    def _field(
        self, key: str, spec: Any, source: str, location: str, inline: bool
    ) -> FieldSpec:
        if not _TARGET_RE.match(key):
            raise TemplateError(f"invalid target field path {key!r}", source, location)
        path = tuple(key.split("@", 1)[0].split("."))

        if isinstance(spec, str):
            return FieldSpec(path, key, _compile(spec, source, location))
        if isinstance(spec, bool):
            return FieldSpec(path, key, Literal(spec))
        if isinstance(spec, (int, float)):
            # YAML reads an unquoted relative path such as .3 as a number
            raise TemplateError(
                f"bare number {spec!r} is ambiguous; quote relative paths ('.3') "
                "or use const for numeric values",
                source,
                location,
            )
        if not isinstance(spec, Mapping):
            raise TemplateError(
                f"field spec must be an expression or a mapping, got {type(spec).__name__}",
                source,
                location,
            )

        _check_keys(spec, _FIELD_KEYS, source, location)
        if "value" in spec and "const" in spec:
            raise TemplateError("use either value or const, not both", source, location)
        nested = [k for k in ("datatype", "fields", "resource") if k in spec]
        if len(nested) > 1:
            raise TemplateError(
                f"{' and '.join(nested)} are mutually exclusive", source, location
            )

        required = _flag(spec, "required", source, location)
        deferred = _flag(spec, "deferred", source, location)
        if deferred and inline:
            raise TemplateError(
                "deferred fields are only allowed in resource templates", source, location
            )
        if deferred and required:
            raise TemplateError("a deferred field cannot be required", source, location)

        expression: Optional[Expression]
        if "const" in spec:
            const = spec["const"]
            expression = Literal(tuple(const) if isinstance(const, list) else const)
        elif "value" in spec:
            expression = _compile(spec["value"], source, f"{location}.value")
        else:
            expression = None

        inline_tmpl: Optional[InlineTemplate] = None
        if "datatype" in spec:
            try:
                inline_tmpl = self.datatype(str(spec["datatype"]))
            except TemplateError as e:
                if e.source is not None:
                    raise
                raise TemplateError(str(e), source, f"{location}.datatype") from e
        elif "fields" in spec:
            inline_tmpl = InlineTemplate(
                name=f"{key}",
                fields=self._fields(spec["fields"], source, f"{location}.fields", inline=True),
            )

        resource = spec.get("resource")
        if resource is not None and not isinstance(resource, str):
            raise TemplateError("resource must be a template name", source, location)

        if expression is None and inline_tmpl is None and resource is None:
            raise TemplateError("field needs value, const, datatype, fields or resource", source, location)
        if expression is None:
            expression = Literal(None)

        condition = spec.get("condition")
        return FieldSpec(
            path=path,
            key=key,
            expression=expression,
            repeats=_flag(spec, "repeats", source, location),
            condition=(
                _compile(condition, source, f"{location}.condition")
                if condition is not None
                else None
            ),
            policy=_policy(spec.get("empty"), source, location),
            required=required,
            deferred=deferred,
            inline=inline_tmpl,
            resource=resource,
        )

    def _identity(
        self, data: Any, fields: Tuple[FieldSpec, ...], source: str
    ) -> Identity:
        if data is None or data == "position":
            return Identity()
        if not isinstance(data, Mapping) or set(data) != {"fields"}:
            raise TemplateError(
                "identity must be 'position' or {fields: [...]}", source, "identity"
            )
        names = data["fields"]
        if isinstance(names, str):
            names = [names]
        if not isinstance(names, list) or not names:
            raise TemplateError("identity.fields must be a non-empty list", source, "identity")
        targets = {f.path[0] for f in fields} | {f.target for f in fields}
        for name in names:
            if name not in targets:
                raise TemplateError(
                    f"identity field {name!r} is not produced by this template",
                    source,
                    "identity.fields",
                )
        return Identity(tuple(str(n) for n in names))

    def _groups(self, data: Any, source: str) -> Dict[str, GroupSpec]:
        if data is None:
            return {}
        if not isinstance(data, Mapping):
            raise TemplateError("groups must be a mapping", source, "groups")
        out = {}
        for name, spec in data.items():
            location = f"groups.{name}"
            if not isinstance(spec, Mapping):
                raise TemplateError("group must be a mapping", source, location)
            _check_keys(spec, {"anchor", "members"}, source, location)
            anchor = spec.get("anchor")
            members = spec.get("members") or []
            for seg in [anchor] + list(members):
                if not isinstance(seg, str) or not _SEGMENT_RE.match(seg):
                    raise TemplateError(f"invalid segment id {seg!r}", source, location)
            out[str(name)] = GroupSpec(str(name), anchor, tuple(members))
        return out

    def _entries(
        self, data: Any, groups: Mapping[str, GroupSpec], source: str, location: str
    ) -> Tuple[Entry, ...]:
        if not isinstance(data, list) or not data:
            raise TemplateError("entries must be a non-empty list", source, location)
        out: List[Entry] = []
        for i, item in enumerate(data):
            where = f"{location}[{i}]"
            if not isinstance(item, Mapping):
                raise TemplateError("entry must be a mapping", source, where)
            if "group" in item:
                _check_keys(item, _GROUP_ENTRY_KEYS, source, where)
                name = item["group"]
                if name not in groups:
                    raise TemplateError(f"unknown group {name!r}", source, where)
                out.append(
                    GroupEntry(
                        group=groups[name],
                        entries=self._entries(
                            item.get("entries"), groups, source, f"{where}.entries"
                        ),
                    )
                )
                continue

            _check_keys(item, _ENTRY_KEYS, source, where)
            template = item.get("template")
            if not isinstance(template, str):
                raise TemplateError("entry needs a template name", source, where)
            segment = item.get("segment")
            if segment is not None and not _SEGMENT_RE.match(str(segment)):
                raise TemplateError(f"invalid segment id {segment!r}", source, where)
            name = item.get("name", template)
            if not _NAME_RE.match(str(name)):
                raise TemplateError(f"invalid entry name {name!r}", source, where)
            condition = item.get("condition")
            out.append(
                ResourceEntry(
                    name=str(name),
                    template=template,
                    segment=segment,
                    repeats=_flag(item, "repeats", source, where),
                    required=_flag(item, "required", source, where),
                    condition=(
                        _compile(condition, source, f"{where}.condition")
                        if condition is not None
                        else None
                    ),
                )
            )
        return tuple(out)

    # --------------------------------------------------------------------------
    # cross checks
    # --------------------------------------------------------------------------

    def _check_entries(
        self,
        entries: Tuple[Entry, ...],
        resources: Mapping[str, ResourceTemplate],
        source: str,
    ) -> None:
        for entry in entries:
            if isinstance(entry, GroupEntry):
                self._check_entries(entry.entries, resources, source)
            elif entry.template not in resources:
                raise TemplateError(
                    f"unknown resource template {entry.template!r}", source, entry.name
                )

    @staticmethod
    def _resource_links(fields: Tuple[FieldSpec, ...]) -> Set[str]:
        links: Set[str] = set()
        for f in fields:
            if f.resource:
                links.add(f.resource)
            if f.inline is not None:
                links |= TemplateLoader._resource_links(f.inline.fields)
        return links

    def _check_resource_cycles(self, resources: Mapping[str, ResourceTemplate]) -> None:
        graph = {
            name: self._resource_links(tmpl.fields) for name, tmpl in resources.items()
        }
        for name, links in graph.items():
            for target in links:
                if target not in graph:
                    raise TemplateError(
                        f"unknown resource template {target!r}",
                        resources[name].source,
                    )

        done: Set[str] = set()

        def visit(name: str, path: List[str]) -> None:
            if name in path:
                chain = " -> ".join(path + [name])
                raise TemplateError(
                    f"circular resource reference: {chain}", resources[name].source
                )
            if name in done:
                return
            for target in sorted(graph[name]):
                visit(target, path + [name])
            done.add(name)

        for name in graph:
            visit(name, [])
