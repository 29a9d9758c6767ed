"""
Timestamp utilities for consistent time handling across the system.

All timestamps are timezone-aware UTC and stored as ISO-8601 strings.
"""

from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to ISO-8601 string format.

    Args:
        value: datetime to convert; naive values are assumed to be UTC

    Returns:
        ISO string, or None when value is None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def to_datetime(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """Convert a stored timestamp to an aware datetime object.

    Args:
        value: ISO string, unix seconds, datetime or None

    Returns:
        datetime object, or None when value is empty
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        result = value
    elif isinstance(value, (int, float)):
        result = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        result = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if result.tzinfo is None:
        result = result.replace(tzinfo=timezone.utc)
    return result


def age_in_days(value: Optional[datetime], now: Optional[datetime] = None) -> float:
    if value is None:
        return 0.0
    now = now or utc_now()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return max(0.0, (now - value).total_seconds() / 86400.0)
