# src/hl7_fhir_engine/terminology/resolver.py
"""
Terminology resolution for coded values.

Every coded value in a converted message goes through ``resolve`` which
decides its system, code and display. Exactly one of these outcomes applies:

1. Known standard system (``code_systems.yml``): the code is checked.
   - valid code: canonical system url and canonical display; the source text
     is kept as the concept text.
   - invalid code: a coding WITHOUT a code, the canonical system url, and a
     synthesized "Invalid input: ..." display. A warning is logged.
2. Internal system (``systems.yml`` plus configured additions): the mapped
   system url, the code as given and the source text as display.
3. Unknown system token: ``urn:id:<token>``, the code and the source text.

A code without any system gives a systemless coding; text without a code
gives a text-only concept.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import yaml

LOG = logging.getLogger(__name__)

# ------------------------------------------------------------------------------
# globals
# ------------------------------------------------------------------------------

_TABLES = "tables"
_URL_PREFIXES = ("http://", "https://", "urn:")
_V2_TABLE_PREFIX = "http://terminology.hl7.org/CodeSystem/v2-"

INVALID_CODE_DISPLAY = "Invalid input: code '{code}' for system '{system}'"


# ------------------------------------------------------------------------------
# value types
# ------------------------------------------------------------------------------


@dataclass(frozen=True)
class Coding:
    """A FHIR Coding in wire shape."""

    system: Optional[str] = None
    code: Optional[str] = None
    display: Optional[str] = None
    version: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for key in ("system", "version", "code", "display"):
            value = getattr(self, key)
            if value:
                out[key] = value
        return out

    def is_blank(self) -> bool:
        return not (self.code or self.display)


@dataclass(frozen=True)
class CodedConcept:
    """A FHIR CodeableConcept: zero or more codings plus optional text."""

    codings: Tuple[Coding, ...] = ()
    text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        codings = [c.to_dict() for c in self.codings if not c.is_blank()]
        if codings:
            out["coding"] = codings
        if self.text:
            out["text"] = self.text
        return out

    def is_blank(self) -> bool:
        return not self.to_dict()

    @property
    def code(self) -> Optional[str]:
        """Code of the first coding that has one."""
        return next((c.code for c in self.codings if c.code), None)


@dataclass(frozen=True)
class CodeSystem:
    """A standard code system with its valid codes."""

    token: str
    url: str
    version: Optional[str] = None
    concepts: Mapping[str, Optional[str]] = field(default_factory=dict)

    def lookup(self, code: str) -> Tuple[bool, Optional[str]]:
        """Return (found, display)."""
        if code in self.concepts:
            return True, self.concepts[code]
        return False, None


# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if text in ("", '""'):
        return None
    return text


def _is_url(token: str) -> bool:
    return token.startswith(_URL_PREFIXES)


def system_id(token: str) -> str:
    """Synthesize a namespaced system uri for an unrecognized token."""
    return "urn:id:" + token.strip().replace(" ", "_")


def _read_yaml(text: str, source: str) -> Mapping[str, Any]:
    data = yaml.safe_load(text)
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise TypeError(
            f"Terminology table must contain a mapping at top level, "
            f"got {type(data).__name__}. Table: {source}"
        )
    return data


def _packaged_table(name: str) -> Mapping[str, Any]:
    ref = resources.files(__package__).joinpath(_TABLES, name)
    return _read_yaml(ref.read_text(encoding="utf-8"), name)


# ------------------------------------------------------------------------------
# resolver
# ------------------------------------------------------------------------------


class TerminologyResolver:
    """
    Resolve (code, system, text) triples into codings and concepts.

    Parameters
    ----------
    code_systems : Mapping[str, CodeSystem]
        Standard systems, keyed by token.
    internal_systems : Mapping[str, str]
        Recognized system tokens mapped to system urls.
    concept_maps : Mapping[str, Mapping[str, str]]
        Named v2 -> FHIR code maps.
    """

    def __init__(
        self,
        code_systems: Mapping[str, CodeSystem],
        internal_systems: Mapping[str, str],
        concept_maps: Mapping[str, Mapping[str, str]],
    ):
        self._by_token: Dict[str, CodeSystem] = {}
        self._by_url: Dict[str, CodeSystem] = {}
        for token, cs in code_systems.items():
            self._by_token[token.upper()] = cs
            self._by_url[cs.url] = cs
        self._internal = {k.upper(): v for k, v in internal_systems.items()}
        self._maps = {
            name: {k.upper(): v for k, v in table.items()}
            for name, table in concept_maps.items()
        }

    # --------------------------------------------------------------------------
    # construction
    # --------------------------------------------------------------------------

    @classmethod
    def from_tables(
        cls, additional_systems: Optional[Mapping[str, str]] = None
    ) -> "TerminologyResolver":
        """
        Build a resolver from the packaged tables.

        Parameters
        ----------
        additional_systems : Mapping[str, str], optional
            Extra internal system tokens; they override packaged ones.
        """
        code_systems: Dict[str, CodeSystem] = {}
        for token, entry in _packaged_table("code_systems.yml").items():
            concepts = entry.get("concepts") or {}
            code_systems[str(token)] = CodeSystem(
                token=str(token),
                url=str(entry["url"]),
                version=_clean(entry.get("version")),
                concepts={
                    str(k): (str(v) if v is not None else None)
                    for k, v in concepts.items()
                },
            )

        internal = {
            str(k): str(v) for k, v in _packaged_table("systems.yml").items()
        }
        internal.update(additional_systems or {})

        maps = {
            str(name): {str(k): str(v) for k, v in (table or {}).items()}
            for name, table in _packaged_table("concept_maps.yml").items()
        }
        return cls(code_systems, internal, maps)

    # --------------------------------------------------------------------------
    # systems
    # --------------------------------------------------------------------------

    def code_system(self, system: Optional[str]) -> Optional[CodeSystem]:
        """Return the standard code system for a token or url, if any."""
        token = _clean(system)
        if token is None:
            return None
        if _is_url(token):
            return self._by_url.get(token)
        return self._by_token.get(token.upper())

    def system_url(self, system: Optional[str]) -> Optional[str]:
        """
        Return the system url for a token.

        Standard systems give their canonical url, internal systems their
        mapped url, urls pass through, anything else gets ``urn:id:``.
        """
        token = _clean(system)
        if token is None:
            return None
        if _is_url(token):
            return token
        cs = self._by_token.get(token.upper())
        if cs is not None:
            return cs.url
        mapped = self._internal.get(token.upper())
        if mapped is not None:
            return mapped
        return system_id(token)

    # --------------------------------------------------------------------------
    # resolution
    # --------------------------------------------------------------------------

    def resolve_coding(
        self,
        code: Optional[str],
        system: Optional[str] = None,
        text: Optional[str] = None,
        version: Optional[str] = None,
    ) -> Optional[Coding]:
        """
        Resolve one coding.

        Returns
        -------
        Coding or None
            None when there is no code.
        """
        code, system, text, version = (
            _clean(code), _clean(system), _clean(text), _clean(version)
        )
        if code is None:
            return None
        if system is None:
            return Coding(code=code)

        cs = self.code_system(system)
        if cs is not None:
            found, display = cs.lookup(code)
            if found:
                return Coding(
                    system=cs.url,
                    code=code,
                    display=display or text,
                    version=version or cs.version,
                )
            LOG.warning("Code %r is not valid in system %s", code, cs.url)
            message = INVALID_CODE_DISPLAY.format(code=code, system=cs.url)
            if text:
                message += f" [original display: {text}]"
            return Coding(system=cs.url, display=message, version=version)

        return Coding(
            system=self.system_url(system), code=code, display=text, version=version
        )

    def resolve(
        self,
        code: Optional[str],
        system: Optional[str] = None,
        text: Optional[str] = None,
        version: Optional[str] = None,
    ) -> Optional[CodedConcept]:
        """
        Resolve a (code, system, text) triple into a concept.

        Parameters
        ----------
        code : str or None
            Source code.
        system : str or None
            Source system token (e.g., "HL70004", "LN") or url.
        text : str or None
            Source text; kept as the concept text.
        version : str or None
            Code system version, when the source carries one.

        Returns
        -------
        CodedConcept or None
            None when there is neither a code nor a text.
        """
        coding = self.resolve_coding(code, system, text, version)
        text = _clean(text)
        if coding is None and text is None:
            return None
        return CodedConcept(codings=(coding,) if coding else (), text=text)

    def resolve_concept(
        self, value: Any, default_system: Optional[str] = None
    ) -> Optional[CodedConcept]:
        """
        Resolve one CE/CWE repetition (or a plain code) into a concept.

        Components 1-3 give the primary coding and 4-6 the alternate one;
        both land in the same concept. The concept text is taken from
        component 9, then 2, then 5. ``default_system`` applies when the
        primary coding names no system.
        """
        if value is None:
            return None
        if isinstance(value, str):
            return self.resolve(value, default_system)

        comp = getattr(value, "component", None)
        if not callable(comp):
            return self.resolve(str(value), default_system)

        def part(i: int) -> Optional[str]:
            v = comp(i)
            return _clean(getattr(v, "text", v))

        primary = self.resolve_coding(
            part(1), part(3) or default_system, part(2), part(7)
        )
        alternate = self.resolve_coding(part(4), part(6), part(5), part(8))
        codings = tuple(c for c in (primary, alternate) if c is not None)
        text = part(9) or part(2) or part(5)
        if not codings and text is None:
            return None
        return CodedConcept(codings=codings, text=text)

    # --------------------------------------------------------------------------
    # concept maps
    # --------------------------------------------------------------------------

    def has_map(self, name: str) -> bool:
        return name in self._maps

    def map_code(self, code: Optional[str], map_name: str) -> Optional[str]:
        """
        Translate a v2 code through a named concept map.

        Raises
        ------
        KeyError
            If no map named ``map_name`` exists.
        """
        table = self._maps[map_name]
        key = _clean(code)
        if key is None:
            return None
        return table.get(key.upper())


# ------------------------------------------------------------------------------
# factories
# ------------------------------------------------------------------------------

_DEFAULT: Optional[TerminologyResolver] = None


def default_resolver() -> TerminologyResolver:
    """Return the process-wide resolver over the packaged tables."""
    global _DEFAULT
    if _DEFAULT is None:
        _DEFAULT = TerminologyResolver.from_tables()
    return _DEFAULT


def load_terminology(
    additional: Union[Path, Mapping[str, str], None] = None,
) -> TerminologyResolver:
    """
    Return a resolver including additional internal systems.

    Parameters
    ----------
    additional : Path, Mapping[str, str] or None
        A YAML file (or an already loaded mapping) of system tokens to urls.
        None returns the default resolver.

    Raises
    ------
    TypeError
        If the YAML file does not contain a mapping at top level.
    """
    if additional is None:
        return default_resolver()
    if isinstance(additional, Path):
        data = _read_yaml(additional.read_text(encoding="utf-8"), str(additional))
        extra = {str(k): str(v) for k, v in data.items()}
    else:
        extra = dict(additional)
    return TerminologyResolver.from_tables(extra)
