"""Timestamp utilities for UTC handling and storage formatting.

Every time value that reaches the queue tables goes through this module:
- Getting current UTC time (the default clock for all services)
- Normalising naive or foreign-zone datetimes to UTC
- Formatting to and parsing from the fixed-width storage format, whose
  lexicographic order matches chronological order
"""

from datetime import datetime, timezone
from typing import Callable, Optional

# Fixed-width so string comparison in SQL orders like datetime comparison
STORAGE_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Current UTC time with timezone info

    Example:
        >>> now = utc_now()
        >>> now.tzinfo == timezone.utc
        True
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure a datetime is timezone-aware and in UTC.

    If the datetime is timezone-naive, it's treated as UTC.
    If the datetime has a different timezone, it's converted to UTC.

    Args:
        dt: Datetime to convert (can be None)

    Returns:
        Timezone-aware datetime in UTC, or None if input is None
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def to_storage(dt: Optional[datetime]) -> Optional[str]:
    """Format a datetime for database storage.

    Args:
        dt: Datetime to format (naive values are treated as UTC)

    Returns:
        Storage string such as ``2025-11-04T12:00:00.000000Z`` or None
    """
    dt = ensure_utc(dt)
    if dt is None:
        return None
    return dt.strftime(STORAGE_FORMAT)


def from_storage(value: Optional[str]) -> Optional[datetime]:
    """Parse a storage string back into an aware UTC datetime.

    Args:
        value: String produced by :func:`to_storage`

    Returns:
        Timezone-aware datetime in UTC or None for empty input
    """
    if value is None or value == "":
        return None

    value = value.rstrip("Z")
    try:
        dt = datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%f")
    except ValueError:
        dt = datetime.strptime(value, "%Y-%m-%dT%H:%M:%S")

    return dt.replace(tzinfo=timezone.utc)


def format_timestamp_for_log(dt: Optional[datetime]) -> str:
    """Format a datetime for structured logging (second precision, 'Z' suffix).

    Example:
        >>> dt = datetime(2025, 11, 4, 12, 0, 0, tzinfo=timezone.utc)
        >>> format_timestamp_for_log(dt)
        '2025-11-04T12:00:00Z'
    """
    dt = ensure_utc(dt)
    if dt is None:
        return ""
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")
