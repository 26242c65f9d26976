# src/hl7_fhir_engine/tree.py
"""
Read-only, indexed view of a parsed HL7 v2 message.

hl7apy owns parsing and structural validation; this module turns its segments
into a tree the expression evaluator can query by coordinates:

    segment occurrence -> field -> repetition -> component -> subcomponent

Absence is explicit: a coordinate past the end of its parent resolves to None,
while a coordinate that exists but carries no text resolves to a blank value.
Segment groups (e.g., one OBR followed by its OBX/NTE segments) are computed
on demand from an anchor segment and a member list.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import (
    Any,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from hl7apy.core import Message

from .hl7_parser import iter_segments, normalize_event

# ------------------------------------------------------------------------------
# globals
# ------------------------------------------------------------------------------

NULL_TOKEN = '""'

Component = Tuple[str, ...]


@dataclass(frozen=True)
class Encoding:
    """Delimiters declared in MSH-1 and MSH-2."""

    field: str = "|"
    component: str = "^"
    repetition: str = "~"
    escape: str = "\\"
    subcomponent: str = "&"

    @classmethod
    def from_mapping(cls, chars: Optional[Mapping[str, str]]) -> "Encoding":
        """Build from hl7apy's ``Message.encoding_chars`` mapping."""
        if not chars:
            return cls()
        return cls(
            field=chars.get("FIELD", "|"),
            component=chars.get("COMPONENT", "^"),
            repetition=chars.get("REPETITION", "~"),
            escape=chars.get("ESCAPE", "\\"),
            subcomponent=chars.get("SUBCOMPONENT", "&"),
        )

    @classmethod
    def from_msh(cls, line: str) -> "Encoding":
        """Read the delimiters from a raw MSH segment line."""
        if not line.startswith("MSH") or len(line) < 8:
            return cls()
        return cls(
            field=line[3],
            component=line[4],
            repetition=line[5],
            escape=line[6],
            subcomponent=line[7],
        )

    def unescape(self, text: str) -> str:
        """Decode \\F\\ \\S\\ \\T\\ \\R\\ \\E\\ and \\.br\\ sequences."""
        if self.escape not in text:
            return text
        esc = re.escape(self.escape)
        replacements = {
            "F": self.field,
            "S": self.component,
            "T": self.subcomponent,
            "R": self.repetition,
            "E": self.escape,
            ".br": "\n",
        }
        pattern = re.compile(f"{esc}(F|S|T|R|E|\\.br){esc}")
        return pattern.sub(lambda m: replacements[m.group(1)], text)


# ------------------------------------------------------------------------------
# values
# ------------------------------------------------------------------------------


class FieldValue:
    """
    One field repetition: an ordered tuple of components, each an ordered
    tuple of subcomponent strings.

    A component with subcomponents is itself exposed as a FieldValue so that
    relative paths index uniformly into whatever composite they start from.
    """

    __slots__ = ("_parts",)

    def __init__(self, parts: Sequence[Sequence[str]]):
        self._parts: Tuple[Component, ...] = tuple(tuple(p) for p in parts)

    @classmethod
    def parse(cls, text: str, encoding: Encoding) -> "FieldValue":
        comps = text.split(encoding.component)
        return cls(
            tuple(encoding.unescape(s) for s in comp.split(encoding.subcomponent))
            for comp in comps
        )

    @classmethod
    def of(cls, *components: str) -> "FieldValue":
        """Build a repetition from plain component strings (handy in tests)."""
        return cls((c,) for c in components)

    @property
    def components(self) -> Tuple[Component, ...]:
        return self._parts

    def component(self, index: int) -> Optional[Union[str, "FieldValue"]]:
        """
        Return component ``index`` (1-based).

        Returns
        -------
        str, FieldValue or None
            The text when the component has a single subcomponent, a
            FieldValue over its subcomponents otherwise, or None when the
            component does not exist.
        """
        if index < 1 or index > len(self._parts):
            return None
        comp = self._parts[index - 1]
        if len(comp) == 1:
            return comp[0]
        return FieldValue((s,) for s in comp)

    @property
    def text(self) -> str:
        """Scalar text: the first subcomponent of the first component."""
        if not self._parts or not self._parts[0]:
            return ""
        return self._parts[0][0]

    def is_blank(self) -> bool:
        return all(
            s.strip() in ("", NULL_TOKEN) for comp in self._parts for s in comp
        )

    def __eq__(self, other: object) -> bool:
        if isinstance(other, FieldValue):
            return self._parts == other._parts
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._parts)

    def __str__(self) -> str:
        return self.text

    def __repr__(self) -> str:
        return f"FieldValue({'^'.join('&'.join(c) for c in self._parts)!r})"


class Segment:
    """
    One segment occurrence.

    Attributes
    ----------
    name : str
        Segment id, e.g. "PID".
    position : int
        0-based index of the segment in the message.
    occurrence : int
        1-based index among segments with the same name.
    er7 : str
        Raw segment text.
    """

    __slots__ = ("name", "position", "occurrence", "er7", "_fields")

    def __init__(
        self,
        name: str,
        fields: Sequence[Tuple[FieldValue, ...]],
        *,
        position: int = 0,
        occurrence: int = 1,
        er7: str = "",
    ):
        self.name = name
        self.position = position
        self.occurrence = occurrence
        self.er7 = er7
        self._fields: Tuple[Tuple[FieldValue, ...], ...] = tuple(fields)

    def field(self, index: int) -> Optional[Tuple[FieldValue, ...]]:
        """
        Return all repetitions of field ``index`` (1-based), or None if the
        segment has fewer fields.
        """
        if index < 1 or index > len(self._fields):
            return None
        return self._fields[index - 1]

    def __len__(self) -> int:
        return len(self._fields)

    @property
    def text(self) -> str:
        return self.er7

    def is_blank(self) -> bool:
        return all(rep.is_blank() for reps in self._fields for rep in reps)

    def __repr__(self) -> str:
        return f"Segment({self.name}[{self.occurrence}])"


def parse_segment(
    line: str, encoding: Encoding, *, position: int = 0, occurrence: int = 1
) -> Segment:
    """
    Split one ER7 segment line into a Segment.

    MSH is special-cased: MSH-1 is the field separator itself and MSH-2 holds
    the encoding characters verbatim.
    """
    parts = line.split(encoding.field)
    name = parts[0].strip()
    fields: List[Tuple[FieldValue, ...]] = []

    if name == "MSH":
        enc_chars = parts[1] if len(parts) > 1 else ""
        fields.append((FieldValue(((encoding.field,),)),))
        fields.append((FieldValue(((enc_chars,),)),))
        raw_fields = parts[2:]
    else:
        raw_fields = parts[1:]

    for raw in raw_fields:
        fields.append(
            tuple(
                FieldValue.parse(rep, encoding) for rep in raw.split(encoding.repetition)
            )
        )
    return Segment(name, fields, position=position, occurrence=occurrence, er7=line)


# ------------------------------------------------------------------------------
# groups and cursor
# ------------------------------------------------------------------------------


@dataclass(frozen=True)
class GroupSpec:
    """
    A repeating segment group: starts at ``anchor`` and extends over the
    following segments listed in ``members``.
    """

    name: str
    anchor: str
    members: Tuple[str, ...] = ()

    def accepts(self, segment_name: str) -> bool:
        return segment_name == self.anchor or segment_name in self.members


@dataclass(frozen=True, eq=False)
class GroupOccurrence:
    """One occurrence of a segment group inside the message or a parent group."""

    name: str
    index: int
    segments: Tuple[Segment, ...]
    parent: Optional["GroupOccurrence"] = None
    spec: Optional[GroupSpec] = None

    def find(self, segment_name: str) -> Tuple[Segment, ...]:
        return tuple(s for s in self.segments if s.name == segment_name)

    def owns(self, segment_name: str) -> bool:
        """True if ``segment_name`` belongs to this group's structure."""
        return self.spec is not None and self.spec.accepts(segment_name)

    @property
    def position(self) -> str:
        own = f"{self.name}[{self.index}]"
        return f"{self.parent.position}/{own}" if self.parent else own


@dataclass(frozen=True)
class Cursor:
    """
    Where an expression is evaluated.

    Attributes
    ----------
    segment : Segment or None
        Active (governing) segment occurrence.
    group : GroupOccurrence or None
        Innermost active group occurrence.
    base : Any
        Base value for relative paths (a Segment, FieldValue or str), used
        while evaluating inline templates.
    """

    segment: Optional[Segment] = None
    group: Optional[GroupOccurrence] = None
    base: Any = None

    @property
    def position(self) -> str:
        parts = []
        if self.group is not None:
            parts.append(self.group.position)
        if self.segment is not None:
            parts.append(f"{self.segment.name}[{self.segment.occurrence}]")
        return "/".join(parts) or "message"


# ------------------------------------------------------------------------------
# tree
# ------------------------------------------------------------------------------


class MessageTree:
    """
    Ordered, read-only list of segment occurrences with coordinate lookups.

    Parameters
    ----------
    segments : Iterable[Segment]
        Segments in message order.
    encoding : Encoding
        Delimiters used by the message.
    """

    def __init__(self, segments: Iterable[Segment], encoding: Encoding):
        self._segments: Tuple[Segment, ...] = tuple(segments)
        self.encoding = encoding
        index: Dict[str, List[Segment]] = {}
        for seg in self._segments:
            index.setdefault(seg.name, []).append(seg)
        self._by_name = {k: tuple(v) for k, v in index.items()}

    @classmethod
    def from_lines(cls, lines: Iterable[str], encoding: Encoding) -> "MessageTree":
        counts: Dict[str, int] = {}
        segments = []
        for pos, line in enumerate(ln for ln in lines if ln.strip()):
            name = line.split(encoding.field, 1)[0].strip()
            counts[name] = counts.get(name, 0) + 1
            segments.append(
                parse_segment(line, encoding, position=pos, occurrence=counts[name])
            )
        return cls(segments, encoding)

    @classmethod
    def from_er7(cls, text: str) -> "MessageTree":
        """
        Build a tree directly from ER7 text.

        Parameters
        ----------
        text : str
            Message with segments separated by CR, LF or CRLF.

        Returns
        -------
        MessageTree
        """
        lines = text.replace("\r\n", "\r").replace("\n", "\r").split("\r")
        first = next((ln for ln in lines if ln.strip()), "")
        return cls.from_lines(lines, Encoding.from_msh(first))

    @classmethod
    def from_message(cls, msg: Message) -> "MessageTree":
        """
        Build a tree from an hl7apy Message.

        Parameters
        ----------
        msg : Message
            Message returned by ``parse_hl7_v2``.

        Returns
        -------
        MessageTree
        """
        encoding = Encoding.from_mapping(getattr(msg, "encoding_chars", None))
        return cls.from_lines((seg.to_er7() for seg in iter_segments(msg)), encoding)

    # --------------------------------------------------------------------------
    # queries
    # --------------------------------------------------------------------------

    def __iter__(self) -> Iterator[Segment]:
        return iter(self._segments)

    def __len__(self) -> int:
        return len(self._segments)

    @property
    def segments(self) -> Tuple[Segment, ...]:
        return self._segments

    def occurrences(
        self, name: str, group: Optional[GroupOccurrence] = None
    ) -> Tuple[Segment, ...]:
        """
        Return the occurrences of segment ``name`` inside ``group`` (or the
        whole message when group is None).
        """
        if group is not None:
            return group.find(name)
        return self._by_name.get(name, ())

    def count(self, name: str, group: Optional[GroupOccurrence] = None) -> int:
        return len(self.occurrences(name, group))

    def groups(
        self, spec: GroupSpec, within: Optional[GroupOccurrence] = None
    ) -> List[GroupOccurrence]:
        """
        Split the message (or a parent group) into occurrences of ``spec``.

        An occurrence starts at each anchor segment and collects the
        contiguous member segments that follow it; any other segment closes
        the occurrence.
        """
        pool = within.segments if within is not None else self._segments
        found: List[GroupOccurrence] = []
        current: List[Segment] = []

        def close() -> None:
            if current:
                found.append(
                    GroupOccurrence(
                        spec.name, len(found) + 1, tuple(current), within, spec
                    )
                )
                current.clear()

        for seg in pool:
            if seg.name == spec.anchor:
                close()
                current.append(seg)
            elif current and spec.accepts(seg.name):
                current.append(seg)
            else:
                close()
        close()
        return found

    # --------------------------------------------------------------------------
    # header shortcuts
    # --------------------------------------------------------------------------

    def _msh_text(self, field: int) -> Optional[str]:
        msh = self._by_name.get("MSH")
        if not msh:
            return None
        reps = msh[0].field(field)
        if not reps:
            return None
        return reps[0].text or None

    @property
    def message_type(self) -> Optional[str]:
        """Normalized trigger event from MSH-9, e.g. "ADT^A01"."""
        msh = self._by_name.get("MSH")
        if not msh:
            return None
        reps = msh[0].field(9)
        if not reps:
            return None
        rep = reps[0]
        return normalize_event(f"{rep.component(1) or ''}^{rep.component(2) or ''}")

    @property
    def control_id(self) -> Optional[str]:
        """Message control id (MSH-10)."""
        return self._msh_text(10)

    @property
    def version(self) -> Optional[str]:
        """Version id (MSH-12)."""
        return self._msh_text(12)
