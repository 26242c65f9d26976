# src/hl7_fhir_engine/hl7_parser.py
"""
HL7 v2 parsing utilities.

Provides:
- parse_hl7_v2: strict/lenient parsing into an hl7apy Message
- split_messages: one string per message from a multi-message stream
- iter_segments: segments in message order, flattening any hl7apy groups
- to_pretty_segments: segment-per-line ER7 strings
- message_type: normalized trigger event from MSH-9 (e.g., "ADT^A01")
"""

from __future__ import annotations

from typing import Any, Iterator, List, Optional

from hl7apy.consts import VALIDATION_LEVEL
from hl7apy.core import Group, Message
from hl7apy.exceptions import HL7apyException
from hl7apy.parser import parse_message

from .exceptions import ParseError

_BATCH_SEGMENTS = ("FHS", "BHS", "BTS", "FTS")


def parse_hl7_v2(raw: str, *, strict: bool = True) -> Message:
    """
    Parse an HL7 v2 message string into an hl7apy Message.

    Parameters
    ----------
    raw : str
        Raw HL7 v2 message in ER7 format (segments separated by CR/LF).
    strict : bool, default True
        If True, uses hl7apy STRICT validation. If False, uses TOLERANT
        validation, which accepts segments outside the message structure
        (e.g., DG1 or IN1 without group inference, Z-segments).

    Returns
    -------
    Message
        Parsed HL7 message object.

    Raises
    ------
    TypeError
        If raw is not a string.
    ValueError
        If raw is an empty string.
    ParseError
        If the HL7 message cannot be parsed.
    """
    if not isinstance(raw, str):
        raise TypeError(f"raw must be str, got {type(raw).__name__}")
    if raw.strip() == "":
        raise ValueError("raw must be a non-empty HL7 v2 string")

    # Normalize line endings so \n or \r\n are accepted (HL7 expects \r)
    normalized = raw.replace("\r\n", "\r").replace("\n", "\r").strip("\r")

    vlevel = VALIDATION_LEVEL.STRICT if strict else VALIDATION_LEVEL.TOLERANT
    try:
        return parse_message(normalized, find_groups=False, validation_level=vlevel)
    except HL7apyException as e:
        raise ParseError(f"Failed to parse HL7 v2 message: {e}") from e


def split_messages(text: str) -> List[str]:
    """
    Split a stream of HL7 v2 messages into one string per message.

    Each message starts at an MSH segment. Batch envelope segments (FHS, BHS,
    BTS, FTS) and blank lines are dropped.

    Parameters
    ----------
    text : str
        One or more messages, segments separated by CR, LF or CRLF.

    Returns
    -------
    List[str]
        Messages with segments joined by CR. Empty when the text holds no
        MSH segment.
    """
    messages: List[List[str]] = []
    for line in text.replace("\r\n", "\r").replace("\n", "\r").split("\r"):
        if not line.strip() or line[:3] in _BATCH_SEGMENTS:
            continue
        if line.startswith("MSH"):
            messages.append([line])
        elif messages:
            messages[-1].append(line)
    return ["\r".join(segs) for segs in messages]


def iter_segments(msg: Message) -> Iterator[Any]:
    """
    Yield hl7apy segments in message order.

    Messages parsed with ``find_groups=True`` nest segments inside groups;
    those are flattened so callers always see the wire order.

    Parameters
    ----------
    msg : Message
        Parsed hl7apy message.

    Yields
    ------
    hl7apy.core.Segment
    """
    stack = list(reversed(list(msg.children)))
    while stack:
        node = stack.pop()
        if isinstance(node, Group):
            stack.extend(reversed(list(node.children)))
        else:
            yield node


def to_pretty_segments(msg: Message) -> List[str]:
    """
    Return a list of ER7 strings, one per segment, in message order.

    Parameters
    ----------
    msg : Message
        Parsed hl7apy message.

    Returns
    -------
    List[str]
        Segment strings (e.g., "PID|...").

    Raises
    ------
    TypeError
        If msg is not an hl7apy.core.Message.
    """
    if not isinstance(msg, Message):
        raise TypeError(f"msg must be hl7apy.core.Message, got {type(msg).__name__}")

    return [seg.to_er7() for seg in iter_segments(msg)]


def normalize_event(raw: Any) -> Optional[str]:
    """
    Normalize an MSH-9 value to ``TYPE^TRIGGER``.

    Parameters
    ----------
    raw : Any
        MSH-9 text (str or bytes), e.g. "ADT^A01^ADT_A01".

    Returns
    -------
    str or None
        "ADT^A01", or None when the value has no trigger component.
    """
    if raw is None:
        return None
    if isinstance(raw, bytes):
        text = raw.decode("ascii", "ignore").strip()
    else:
        text = str(raw).strip()

    parts = text.split("^")
    if len(parts) < 2 or not parts[0] or not parts[1]:
        return None
    return f"{parts[0].upper()}^{parts[1].upper()}"


def message_type(msg: Message) -> Optional[str]:
    """
    Return the trigger event of an hl7apy message (e.g., "ADT^A01").

    Parameters
    ----------
    msg : Message
        Parsed HL7 v2 message.

    Returns
    -------
    str or None
        Normalized event, or None if MSH-9 is missing or malformed.
    """
    try:
        raw = msg.MSH.msh_9.to_er7()
    except (AttributeError, HL7apyException):
        return None
    return normalize_event(raw)
