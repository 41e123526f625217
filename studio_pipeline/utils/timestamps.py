"""Timestamp utilities for UTC handling and business-date parsing.

Run bookkeeping (startedAt, lastFetched) is always UTC-aware. Business
event dates coming out of reports are plain calendar dates.
"""

import re
from datetime import date, datetime, timezone
from typing import Optional

# Formats seen in exported reports, tried in order after ISO-8601
_BUSINESS_DATE_FORMATS = (
    "%m/%d/%Y",
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y %H:%M",
    "%m/%d/%y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%b %d, %Y %I:%M %p",
    "%b %d, %Y, %I:%M %p",
)

_ISO_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}")


def utc_now() -> datetime:
    """Get current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure a datetime is timezone-aware and in UTC.

    Naive datetimes are treated as UTC; aware ones are converted.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso_datetime(iso_string: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 datetime string to a UTC datetime.

    Supports ``2026-02-24T12:00:00Z``, explicit offsets, naive timestamps and
    date-only strings. Returns None if the value cannot be parsed.
    """
    if not iso_string or not iso_string.strip():
        return None

    cleaned = iso_string.strip()
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"

    try:
        return ensure_utc(datetime.fromisoformat(cleaned))
    except ValueError:
        return None


def format_timestamp(dt: Optional[datetime], include_microseconds: bool = False) -> str:
    """Format a datetime as an ISO 8601 UTC string with a 'Z' suffix.

    Example:
        >>> format_timestamp(datetime(2026, 2, 24, 12, 0, tzinfo=timezone.utc))
        '2026-02-24T12:00:00Z'
    """
    dt_utc = ensure_utc(dt)
    if dt_utc is None:
        return ""

    if include_microseconds:
        return dt_utc.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return dt_utc.strftime("%Y-%m-%dT%H:%M:%SZ")


def to_epoch_ms(dt: Optional[datetime]) -> Optional[int]:
    """Convert a datetime to milliseconds since the Unix epoch."""
    dt_utc = ensure_utc(dt)
    if dt_utc is None:
        return None
    return int(dt_utc.timestamp() * 1000)


def parse_business_date(value: Optional[str]) -> Optional[date]:
    """Parse a report date cell into a calendar date.

    ISO values keep their calendar day as written, regardless of offset, so
    ``2026-02-24T23:30:00-05:00`` is the 24th. Returns None when nothing
    matches.

    Example:
        >>> parse_business_date("2/24/2026")
        datetime.date(2026, 2, 24)
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    if _ISO_DATE_PREFIX.match(text):
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            return None

    for fmt in _BUSINESS_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue

    return None
