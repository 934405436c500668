"""Datetime utilities with consistent UTC timezone handling.

Snapshots travel as ISO-8601 strings and are compared in whole milliseconds,
so every datetime in Shelf Sync goes through these helpers.
"""

from datetime import datetime, timezone
from typing import Optional


def now_utc() -> datetime:
    """Return current datetime in UTC timezone.

    Returns:
        Current datetime with timezone=UTC
    """
    return datetime.now(timezone.utc)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime is timezone-aware, assuming UTC if naive.

    Args:
        dt: Datetime to check/convert, or None

    Returns:
        Timezone-aware datetime in UTC, or None if input was None
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        # Naive datetime - assume UTC
        return dt.replace(tzinfo=timezone.utc)

    return dt


def to_iso_string(dt: Optional[datetime]) -> Optional[str]:
    """Convert datetime to ISO string with timezone info.

    Args:
        dt: Datetime to convert, or None

    Returns:
        ISO format string with timezone, or None if input was None
    """
    if dt is None:
        return None

    return ensure_aware(dt).isoformat()


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 string into an aware datetime.

    Accepts the trailing ``Z`` that JavaScript's ``toISOString`` produces.

    Raises:
        ValueError: If the string is not a valid ISO timestamp
    """
    if not isinstance(value, str):
        raise ValueError(f"Expected ISO timestamp string, got {type(value).__name__}")
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_aware(datetime.fromisoformat(value))


def to_millis(dt: datetime) -> int:
    """Milliseconds since the epoch, the unit all sync comparisons use."""
    return int(ensure_aware(dt).timestamp() * 1000)


def from_timestamp(seconds: float) -> datetime:
    """Aware UTC datetime from a Unix timestamp in seconds."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def file_safe_timestamp(dt: Optional[datetime] = None) -> str:
    """ISO timestamp with ``:`` and ``.`` replaced, usable in file names."""
    stamp = (dt or now_utc()).isoformat()
    return stamp.replace(":", "-").replace(".", "-")
