# src/hl7_fhir_engine/expression/dates.py
"""
HL7 v2 date/time (DT, DTM, TS) parsing and FHIR formatting.

Accepted source shapes: YYYY[MM[DD[HH[MM[SS[.S[S[S[S]]]]]]]]][+/-ZZZZ].

Conversion rules
----------------
- FHIR date keeps the source precision: YYYY, YYYY-MM or YYYY-MM-DD.
- FHIR dateTime with a time part always carries seconds and an offset. The
  source offset wins; otherwise the default zone is applied. Without either,
  the value cannot be placed on the timeline and is dropped with a warning.
- Malformed values (bad digits, month 13, ...) yield None and a warning.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Optional

LOG = logging.getLogger(__name__)

# ------------------------------------------------------------------------------
# globals
# ------------------------------------------------------------------------------

_DTM_RE = re.compile(
    r"""^
    (?P<year>\d{4})
    (?:(?P<month>\d{2})
      (?:(?P<day>\d{2})
        (?:(?P<hour>\d{2})
          (?:(?P<minute>\d{2})
            (?:(?P<second>\d{2})(?:\.(?P<fraction>\d{1,4}))?)?
          )?
        )?
      )?
    )?
    (?P<offset>[+-]\d{4})?
    $""",
    re.VERBOSE,
)


@dataclass(frozen=True)
class HL7Timestamp:
    """A parsed HL7 timestamp with its original precision."""

    year: int
    month: Optional[int] = None
    day: Optional[int] = None
    hour: Optional[int] = None
    minute: Optional[int] = None
    second: Optional[int] = None
    fraction: Optional[str] = None
    offset: Optional[timedelta] = None

    @property
    def has_time(self) -> bool:
        return self.hour is not None

    def fhir_date(self) -> str:
        if self.month is None:
            return f"{self.year:04d}"
        if self.day is None:
            return f"{self.year:04d}-{self.month:02d}"
        return f"{self.year:04d}-{self.month:02d}-{self.day:02d}"

    def to_datetime(self, default_zone: Optional[tzinfo]) -> Optional[datetime]:
        """
        Return an aware datetime, or None when no zone can be determined.
        Missing time parts default to zero.
        """
        zone: Optional[tzinfo]
        if self.offset is not None:
            zone = timezone(self.offset)
        else:
            zone = default_zone
        if zone is None:
            return None
        micro = int((self.fraction or "0").ljust(6, "0")[:6])
        return datetime(
            self.year,
            self.month or 1,
            self.day or 1,
            self.hour or 0,
            self.minute or 0,
            self.second or 0,
            micro,
            tzinfo=zone,
        )


# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


def _format_offset(moment: datetime) -> str:
    delta = moment.utcoffset() or timedelta(0)
    sign = "-" if delta < timedelta(0) else "+"
    minutes = abs(int(delta.total_seconds())) // 60
    return f"{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _format(moment: datetime, fraction: Optional[str]) -> str:
    text = moment.strftime("%Y-%m-%dT%H:%M:%S")
    if fraction:
        text += "." + fraction
    return text + _format_offset(moment)


def parse_hl7_datetime(text: Optional[str]) -> Optional[HL7Timestamp]:
    """
    Parse an HL7 DT/DTM/TS value.

    Parameters
    ----------
    text : str or None
        Source value, e.g. "20250101123000-0500".

    Returns
    -------
    HL7Timestamp or None
        None for blank input or values that are not valid timestamps.
    """
    if text is None:
        return None
    value = text.strip()
    if not value:
        return None
    m = _DTM_RE.match(value)
    if m is None:
        LOG.warning("Invalid HL7 date/time value %r", value)
        return None

    g = m.groupdict()
    ints = {k: int(g[k]) if g[k] is not None else None for k in
            ("year", "month", "day", "hour", "minute", "second")}
    offset = None
    if g["offset"]:
        sign = -1 if g["offset"][0] == "-" else 1
        hh, mm = int(g["offset"][1:3]), int(g["offset"][3:5])
        offset = sign * timedelta(hours=hh, minutes=mm)
    stamp = HL7Timestamp(fraction=g["fraction"], offset=offset, **ints)

    # Range checks: let the datetime constructor validate the calendar.
    try:
        date(stamp.year, stamp.month or 1, stamp.day or 1)
        datetime(2000, 1, 1, stamp.hour or 0, stamp.minute or 0, stamp.second or 0)
        if offset is not None and abs(offset) >= timedelta(hours=24):
            raise ValueError("offset out of range")
    except ValueError as e:
        LOG.warning("Invalid HL7 date/time value %r: %s", value, e)
        return None
    return stamp


def to_fhir_date(text: Optional[str]) -> Optional[str]:
    """Format as a FHIR date at source precision (time parts are dropped)."""
    stamp = parse_hl7_datetime(text)
    return stamp.fhir_date() if stamp else None


def to_fhir_datetime(text: Optional[str], zone: Optional[tzinfo]) -> Optional[str]:
    """
    Format as a FHIR dateTime.

    Values without a time part keep date precision. Values with a time part
    need an offset or a default zone.
    """
    stamp = parse_hl7_datetime(text)
    if stamp is None:
        return None
    if not stamp.has_time:
        return stamp.fhir_date()
    moment = stamp.to_datetime(zone)
    if moment is None:
        LOG.warning(
            "Cannot convert local date/time %r: no offset in value and no "
            "default time zone configured",
            text,
        )
        return None
    return _format(moment, stamp.fraction)


def to_fhir_instant(text: Optional[str], zone: Optional[tzinfo]) -> Optional[str]:
    """Format as a FHIR instant; requires a time part down to the second."""
    stamp = parse_hl7_datetime(text)
    if stamp is None:
        return None
    if stamp.second is None:
        LOG.warning("Value %r is not precise enough for an instant", text)
        return None
    return to_fhir_datetime(text, zone)


def to_aware_datetime(text: Optional[str], zone: Optional[tzinfo]) -> Optional[datetime]:
    """Return an aware datetime for arithmetic, or None."""
    stamp = parse_hl7_datetime(text)
    if stamp is None:
        return None
    return stamp.to_datetime(zone)
