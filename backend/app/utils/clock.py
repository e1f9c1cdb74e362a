"""
Injectable clocks.

Services take a clock instead of calling datetime directly so tests can pin time.
"""
from datetime import datetime, timedelta

from app.models.base import utcnow


class SystemClock:
    """Wall clock (naive UTC)."""

    def now(self) -> datetime:
        return utcnow()


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now

    def set(self, now: datetime):
        self._now = now
