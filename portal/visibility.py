"""Announcement visibility rules and the timestamp handling they depend on.

All timestamps are timezone-naive wall-clock values in the portal's local
time, stored as ``YYYY-MM-DD HH:MM:SS``. Because that format sorts
lexicographically in chronological order, the store can compare the stored
text directly.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from .models import Severity

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

_INPUT_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
)


def format_timestamp(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    return datetime.strptime(str(value), TIMESTAMP_FORMAT)


def parse_local_datetime(value: object) -> Optional[datetime]:
    """Parse browser ``datetime-local`` style input.

    Returns ``None`` for empty or unparseable input, which callers treat as
    "no bound". Offset-aware input is converted to local time and made naive.
    """

    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip().replace("T", " ")
        if not text:
            return None
        parsed = None
        for fmt in _INPUT_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
        if parsed is None:
            try:
                parsed = datetime.fromisoformat(text)
            except ValueError:
                return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed.replace(microsecond=0)


def normalize_datetime(value: object) -> Optional[str]:
    """Normalise ``datetime-local`` input to the stored text representation."""

    parsed = parse_local_datetime(value)
    if parsed is None:
        return None
    return format_timestamp(parsed)


def coerce_severity(value: object) -> Severity:
    """Map arbitrary input onto a known severity, defaulting to ``info``."""

    if isinstance(value, Severity):
        return value
    if not isinstance(value, str):
        return Severity.INFO
    try:
        return Severity(value.strip().lower())
    except ValueError:
        return Severity.INFO


def is_within_window(
    starts_at: Optional[datetime],
    ends_at: Optional[datetime],
    now: datetime,
) -> bool:
    """Return ``True`` when ``now`` lies inside the inclusive window.

    A missing bound is open on that side.
    """

    if starts_at is not None and starts_at > now:
        return False
    if ends_at is not None and ends_at < now:
        return False
    return True


def is_visible(
    active: bool,
    starts_at: Optional[datetime],
    ends_at: Optional[datetime],
    now: datetime,
) -> bool:
    return bool(active) and is_within_window(starts_at, ends_at, now)


__all__ = [
    "TIMESTAMP_FORMAT",
    "coerce_severity",
    "format_timestamp",
    "is_visible",
    "is_within_window",
    "normalize_datetime",
    "parse_local_datetime",
    "parse_timestamp",
]
