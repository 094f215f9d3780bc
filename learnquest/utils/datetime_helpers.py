"""
Standardized Date/Time Handling Utilities

Centralizes the time rules every gamification component relies on:
1. All timestamps are timezone-aware and stored in UTC
2. "Calendar day" always means the day in the system's reference timezone
3. "Now" comes from an injected clock so tests can move time

CRITICAL RULES:
- Never compare naive and aware datetimes
- Never derive a calendar day from a UTC timestamp without the reference timezone
"""

import logging
from datetime import datetime, date, timedelta, timezone
from typing import Optional, Protocol
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

UTC = ZoneInfo("UTC")


class Clock(Protocol):
    """Source of the current time"""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock, always UTC"""

    def now(self) -> datetime:
        return now_utc()


class FrozenClock:
    """
    Clock that only moves when told to

    Used by tests and by replay tooling that needs deterministic day boundaries.
    """

    def __init__(self, start: datetime):
        self._now = ensure_aware(start)

    def now(self) -> datetime:
        return self._now

    def set(self, moment: datetime) -> None:
        self._now = ensure_aware(moment)

    def advance(self, **kwargs) -> datetime:
        """Move forward by a timedelta built from kwargs (days=1, hours=2, ...)"""
        self._now = self._now + timedelta(**kwargs)
        return self._now


def now_utc() -> datetime:
    """
    Get current datetime in UTC (timezone-aware)

    Returns:
        Current datetime in UTC with timezone info
    """
    return datetime.now(timezone.utc)


def ensure_aware(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC"""
    if dt.tzinfo is None:
        logger.warning(f"Received naive datetime, assuming UTC: {dt}")
        return dt.replace(tzinfo=timezone.utc)
    return dt


def calendar_day(dt: datetime, tz: ZoneInfo = UTC) -> date:
    """
    Calendar day of a timestamp in the given timezone

    Args:
        dt: Timestamp (naive values are assumed to be UTC)
        tz: Reference timezone

    Returns:
        The local date
    """
    return ensure_aware(dt).astimezone(tz).date()


def is_same_day(first: Optional[datetime], second: Optional[datetime], tz: ZoneInfo = UTC) -> bool:
    """True when both timestamps fall on the same calendar day in tz"""
    if first is None or second is None:
        return False
    return calendar_day(first, tz) == calendar_day(second, tz)


def days_between(earlier: datetime, later: datetime, tz: ZoneInfo = UTC) -> int:
    """
    Number of calendar-day boundaries between two timestamps

    0 means same day, 1 means `earlier` was yesterday relative to `later`.
    Negative when `earlier` is actually after `later`.
    """
    return (calendar_day(later, tz) - calendar_day(earlier, tz)).days
