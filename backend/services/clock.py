"""
Clock abstraction for time-driven work.

Everything that compares against "now" (lifecycle deadlines, notification
schedules, reconciliation windows) reads the time from a Clock so the
scheduled jobs can be driven by simulated time in tests.

Timestamps are naive UTC throughout, matching the DateTime columns.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Clock(ABC):
    """Source of the current time."""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    """Production clock backed by the system time."""

    def now(self) -> datetime:
        return utcnow()


class FixedClock(Clock):
    """Controllable clock for tests and replays.

    Not thread-safe; intended for single-threaded tests.
    """

    def __init__(self, fixed_time: datetime) -> None:
        self._validate_naive(fixed_time)
        self._fixed_time = fixed_time

    def now(self) -> datetime:
        return self._fixed_time

    def set_time(self, new_time: datetime) -> None:
        """Explicitly change the fixed time for testing scenarios."""
        self._validate_naive(new_time)
        self._fixed_time = new_time

    def advance(self, **kwargs) -> datetime:
        """Move the clock forward by a timedelta built from ``kwargs``."""
        self._fixed_time = self._fixed_time + timedelta(**kwargs)
        return self._fixed_time

    def _validate_naive(self, dt: datetime) -> None:
        if dt.tzinfo is not None:
            raise ValueError(f"datetime must be naive UTC, got tzinfo={dt.tzinfo}")
