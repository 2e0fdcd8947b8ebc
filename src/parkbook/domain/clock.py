# File: src/parkbook/domain/clock.py
"""
Clock abstraction for the reservation engine.

Every service asks a Clock for "now" instead of calling datetime.now()
directly, so tests can pin and advance time deterministically.
All datetimes handled by the domain are timezone-aware UTC.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


def ensure_utc(value: datetime) -> datetime:
    """Return value as an aware UTC datetime (naive values are taken as UTC)"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock(ABC):
    """Source of the current time"""

    @abstractmethod
    def now(self) -> datetime:
        pass


class SystemClock(Clock):
    """Wall-clock time in UTC"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """
    Clock frozen at a given instant until moved explicitly.
    Used by tests and by replay tooling.
    """

    def __init__(self, now: Optional[datetime] = None):
        self._now = ensure_utc(now) if now else datetime.now(timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = ensure_utc(value)

    def advance(self, **kwargs) -> datetime:
        """Move the clock forward; accepts timedelta keyword arguments"""
        self._now = self._now + timedelta(**kwargs)
        return self._now
