"""
Clock -- the only source of "now" for the production engine.

Batch windows, step start/end stamps, overdue checks and schedule date
validation all read time through a ``Clock`` handed to the service at
construction.  ``SystemClock`` is used in deployments; tests drive a
``DeterministicClock`` forward minute by minute through a production day.

All instants are timezone-aware UTC.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone

DEFAULT_START = datetime(2025, 8, 15, 6, 0, tzinfo=timezone.utc)


def _require_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError("DeterministicClock requires a timezone-aware datetime")
    return value.astimezone(timezone.utc)


class Clock(ABC):
    """Injected time source.  ``now()`` is always aware UTC."""

    @abstractmethod
    def now(self) -> datetime:
        ...

    def today(self) -> date:
        """UTC calendar date of ``now()``; schedule dates compare against it."""
        return self.now().date()


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Manually driven clock.

    Time stands still until the test moves it: ``advance_minutes(40)``
    after beginning a 40 minute bake step makes the completion land exactly
    on the planned end.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._now = _require_aware(fixed_time or DEFAULT_START)

    def now(self) -> datetime:
        return self._now

    def set_time(self, time: datetime) -> None:
        self._now = _require_aware(time)

    def advance(self, seconds: int = 1) -> None:
        self._now += timedelta(seconds=seconds)

    def advance_minutes(self, minutes: int) -> None:
        self._now += timedelta(minutes=minutes)

    def tick(self) -> datetime:
        """One second forward; returns the new instant."""
        self.advance()
        return self._now
