"""Timestamp utilities.

Everything in the service works in timezone-aware UTC. The search index
stores ``createdAt`` as epoch seconds, so conversions live here too.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure a datetime is timezone-aware and in UTC.

    Naive datetimes are treated as UTC; aware ones are converted.

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


def parse_iso_datetime(iso_string: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 string (``Z`` suffix allowed) to a UTC datetime.

    Returns None for blank or unparseable input.
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


def format_timestamp(dt: datetime, include_microseconds: bool = False) -> str:
    """Format a datetime as ISO 8601 string in UTC with a 'Z' suffix.

    Example:
        >>> format_timestamp(datetime(2025, 11, 4, 12, 0, 0, tzinfo=timezone.utc))
        '2025-11-04T12:00:00Z'
    """
    dt_utc = ensure_utc(dt)
    if dt_utc is None:
        return ""

    if include_microseconds:
        return dt_utc.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return dt_utc.strftime("%Y-%m-%dT%H:%M:%SZ")


def timestamp_to_unix(dt: datetime) -> int:
    """Convert datetime to whole Unix seconds.

    Example:
        >>> timestamp_to_unix(datetime(2025, 11, 4, 12, 0, 0, tzinfo=timezone.utc))
        1762257600
    """
    dt_utc = ensure_utc(dt)
    if dt_utc is None:
        return 0
    return int(dt_utc.timestamp())


def unix_to_timestamp(unix_seconds: float) -> datetime:
    """Convert Unix seconds to a UTC datetime.

    Values that look like milliseconds (the indexer historically wrote
    ``Date.parse`` output) are scaled down first.
    """
    if unix_seconds > 10_000_000_000:
        unix_seconds = unix_seconds / 1000
    return datetime.fromtimestamp(unix_seconds, tz=timezone.utc)
