"""Timestamp normalization for activity documents.

Activity documents have carried their timestamp in several encodings over
time. Everything is converted to a timezone-aware UTC datetime truncated to
millisecond resolution, or to the UNPARSEABLE sentinel.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any

from dateutil import parser as dateutil_parser

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# "MM/DD/YYYY - hh:mm:ss AM/PM"; whitespace is only flexible around the dash
CUSTOM_TIMESTAMP_RE = re.compile(
    r"(\d{2})/(\d{2})/(\d{4})\s*-\s*(\d{1,2}):(\d{2}):(\d{2}) (AM|PM)"
)

# Anything that starts with a slash date and ends with an AM/PM clock is an
# attempt at the custom format and must match it exactly.
_CUSTOM_ATTEMPT_RE = re.compile(
    r"\s*\d{1,2}/\d{1,2}/\d{4}\b.*\d{1,2}:\d{2}(:\d{2})?\s*[AaPp][Mm]\s*"
)


class _Unparseable:
    """Sentinel for a timestamp that could not be interpreted."""

    _instance: _Unparseable | None = None

    def __new__(cls) -> _Unparseable:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNPARSEABLE"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self) -> str:
        return "UNPARSEABLE"


UNPARSEABLE = _Unparseable()


def is_parseable(value: datetime | _Unparseable) -> bool:
    """Return True if normalize() produced a real instant."""
    return isinstance(value, datetime)


def _truncate_ms(dt: datetime) -> datetime:
    return dt.replace(microsecond=dt.microsecond // 1000 * 1000)


def _to_utc(dt: datetime) -> datetime | _Unparseable:
    """Attach the local zone to naive datetimes, then convert to UTC.

    Values whose conversion leaves the representable range (years 1-9999)
    are UNPARSEABLE.
    """
    try:
        if dt.tzinfo is None:
            dt = dt.astimezone()
        return _truncate_ms(dt.astimezone(timezone.utc))
    except (OverflowError, ValueError, OSError):
        return UNPARSEABLE


def to_local(instant: datetime, tz: tzinfo | None = None) -> datetime:
    """Convert an instant to the given zone (default: the local zone)."""
    return instant.astimezone(tz)


def _from_seconds_nanos(seconds: Any, nanoseconds: Any) -> datetime | _Unparseable:
    try:
        millis = int(seconds) * 1000 + int(nanoseconds) // 1_000_000
        return _EPOCH + timedelta(milliseconds=millis)
    except (TypeError, ValueError, OverflowError):
        return UNPARSEABLE


def _from_structured(raw: Any) -> datetime | _Unparseable | None:
    """Handle timestamp objects and their serialized mapping form.

    Returns None when raw is not structured at all, so the caller can try
    the next encoding.
    """
    if isinstance(raw, datetime):
        return _to_utc(raw)

    if isinstance(raw, dict):
        for sec_key, nano_key in (("seconds", "nanoseconds"), ("_seconds", "_nanoseconds")):
            if sec_key in raw:
                return _from_seconds_nanos(raw[sec_key], raw.get(nano_key, 0))
        return None

    if hasattr(raw, "seconds") and hasattr(raw, "nanoseconds"):
        return _from_seconds_nanos(raw.seconds, raw.nanoseconds)

    for accessor in ("to_datetime", "ToDatetime", "toDate"):
        method = getattr(raw, accessor, None)
        if callable(method):
            try:
                converted = method()
            except (TypeError, ValueError, OverflowError):
                return UNPARSEABLE
            if isinstance(converted, datetime):
                return _to_utc(converted)
            return UNPARSEABLE

    return None


def _from_epoch_ms(raw: int | float) -> datetime | _Unparseable:
    if isinstance(raw, float) and not math.isfinite(raw):
        return UNPARSEABLE
    try:
        return _truncate_ms(_EPOCH + timedelta(milliseconds=raw))
    except OverflowError:
        return UNPARSEABLE


def _from_iso(raw: str) -> datetime | _Unparseable | None:
    try:
        dt = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return _to_utc(dt)


def parse_custom_timestamp(raw: str) -> datetime | _Unparseable:
    """Parse "MM/DD/YYYY - hh:mm:ss AM/PM" as local time.

    Hour must be 1-12. 12 AM is midnight, 12 PM is noon and 1-11 PM add
    twelve hours. Impossible calendar dates (e.g. 02/30) are rejected.
    """
    match = CUSTOM_TIMESTAMP_RE.fullmatch(raw.strip())
    if not match:
        return UNPARSEABLE

    month, day, year, hour, minute, second, meridiem = match.groups()
    hour_12 = int(hour)
    if not 1 <= hour_12 <= 12:
        return UNPARSEABLE

    hour_24 = hour_12 % 12
    if meridiem == "PM":
        hour_24 += 12

    try:
        local = datetime(int(year), int(month), int(day), hour_24, int(minute), int(second))
    except ValueError:
        return UNPARSEABLE
    return _to_utc(local)


def _from_generic(raw: str) -> datetime | _Unparseable:
    try:
        dt = dateutil_parser.parse(raw)
    except (ValueError, OverflowError):
        return UNPARSEABLE
    return _to_utc(dt)


def normalize(raw: Any) -> datetime | _Unparseable:
    """Convert any supported timestamp encoding to a UTC instant.

    Tried in order:
    1. Structured timestamp (seconds + nanoseconds, a datetime, or an object
       with a to-datetime accessor)
    2. Epoch milliseconds (int or float)
    3. ISO 8601 string (naive values are local time)
    4. "MM/DD/YYYY - hh:mm:ss AM/PM" in local time
    5. Generic date parsing

    Never raises; returns UNPARSEABLE when nothing applies.
    """
    if raw is None or isinstance(raw, (bool, _Unparseable)):
        return UNPARSEABLE

    structured = _from_structured(raw)
    if structured is not None:
        return structured

    if isinstance(raw, (int, float)):
        return _from_epoch_ms(raw)

    if not isinstance(raw, str) or not raw.strip():
        return UNPARSEABLE

    iso = _from_iso(raw)
    if iso is not None:
        return iso

    if _CUSTOM_ATTEMPT_RE.fullmatch(raw):
        return parse_custom_timestamp(raw)

    return _from_generic(raw)
