"""
Datetime helper utilities to ensure consistent timezone handling across the application.

All DateTime columns are timezone-naive and hold UTC. API input may arrive
timezone-aware, so every boundary value passes through ensure_naive_datetime
before it reaches a query or a column.
"""

from datetime import datetime, timezone
from typing import Callable, Optional
import logging

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


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
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Get current UTC time as naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from start to end (negative when end precedes start)"""
    return int((end - start).total_seconds() // 60)
