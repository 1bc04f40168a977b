"""
Clock -- injectable time for the stock kernel.

Services stamp movements, transfer events and corrections with
``clock.now()`` and judge warranties against ``clock.today()``.  Nothing in
the kernel calls ``datetime.now()`` or ``date.today()`` itself, so a test
can pin time and move it forward to cross a warranty end date.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone

DEFAULT_TEST_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class Clock(ABC):
    """Source of the current UTC time."""

    @abstractmethod
    def now(self) -> datetime:
        ...

    def today(self) -> date:
        """Business date used for warranty checks."""
        return self.now().date()


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Frozen clock for tests.

    ``now()`` only changes when the test moves it with ``advance`` or
    ``advance_days``.
    """

    def __init__(self, start: datetime = DEFAULT_TEST_TIME):
        if start.tzinfo is None:
            raise ValueError("DeterministicClock needs a timezone-aware start time")
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 1) -> datetime:
        self._now += timedelta(seconds=seconds)
        return self._now

    def advance_days(self, days: int) -> datetime:
        return self.advance(days * 86400)
