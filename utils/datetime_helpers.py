"""
Datetime helper utilities to ensure consistent timezone handling across the application.

All bounty tables store timezone-naive UTC datetimes (DateTime(timezone=False)),
which is what SQLite hands back anyway. Every datetime entering the engine goes
through ensure_naive_datetime before it is compared or persisted.
"""

from datetime import datetime, timezone
from typing import Optional


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Args:
        dt: Datetime that may be timezone-aware or naive

    Returns:
        Naive datetime in UTC, or None if input is None

    Example:
        >>> aware_dt = datetime.now(timezone.utc)
        >>> naive_dt = ensure_naive_datetime(aware_dt)
        >>> assert naive_dt.tzinfo is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        # Convert to UTC and remove timezone info
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Current UTC time as naive datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
