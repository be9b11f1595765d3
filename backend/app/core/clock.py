# backend/app/core/clock.py
"""
Clock sources.

Every time-dependent decision in the MFA engine reads the time through a
clock object so tests can pin "now" to an exact instant.
All clocks return timezone-aware UTC datetimes.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC (stored rows may come back naive on SQLite)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def now_seconds(self) -> float:
        return self.now().timestamp()


class FixedClock:
    """
    Manually driven clock for tests and replay.

    Usage:
        clock = FixedClock(datetime(2024, 3, 1, 18, 0, tzinfo=timezone.utc))
        clock.advance(minutes=5)
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_aware(start or datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._now

    def now_seconds(self) -> float:
        return self._now.timestamp()

    def set(self, value: datetime) -> None:
        self._now = ensure_aware(value)

    def advance(self, **delta) -> datetime:
        """Move forward by ``timedelta(**delta)`` and return the new time."""
        self._now = self._now + timedelta(**delta)
        return self._now
