"""
Datetime utility functions

Everything in the engine works on timezone-aware UTC datetimes. Rows coming
back from PostgreSQL (timestamptz) are already aware; naive values from older
rows or test fixtures are assumed to be UTC.
"""
from datetime import datetime, timezone
from typing import Optional
import logging

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(value) -> Optional[datetime]:
    """
    Normalize a timestamp to an aware UTC datetime

    Handles multiple cases:
    - None -> None
    - aware datetime -> converted to UTC
    - naive datetime -> assumed UTC
    - String ISO format -> parsed, then normalized
    - Other -> None with warning

    Args:
        value: datetime, ISO string, or None

    Returns:
        Aware UTC datetime or None
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if isinstance(value, str):
        try:
            return ensure_utc(datetime.fromisoformat(value.replace('Z', '+00:00')))
        except ValueError as e:
            logger.warning(f"Failed to parse datetime string '{value}': {e}")
            return None

    logger.warning(f"Cannot convert {type(value)} to datetime: {value}")
    return None


def days_between(earlier: datetime, later: datetime) -> float:
    """Fractional days from earlier to later (never negative)"""
    delta = ensure_utc(later) - ensure_utc(earlier)
    return max(0.0, delta.total_seconds() / 86400.0)


def hours_between(earlier: datetime, later: datetime) -> float:
    """Fractional hours from earlier to later (never negative)"""
    return days_between(earlier, later) * 24.0
