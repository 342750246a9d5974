"""Clock abstraction so timestamps in run / batch tracking are testable.

Production code uses SystemClock. Tests inject ManualClock and advance it
explicitly instead of sleeping.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Return the current timezone-aware UTC time."""
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """Controllable clock for deterministic tests.

    Example:
        clock = ManualClock(datetime(2026, 1, 5, 9, tzinfo=timezone.utc))
        clock.advance(seconds=30)
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._current = start or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._current

    def advance(self, seconds: float = 0.0, **kwargs: float) -> None:
        delta = timedelta(seconds=seconds, **kwargs)
        if delta < timedelta(0):
            raise ValueError(f"Cannot move clock backwards by {delta}")
        self._current += delta


DEFAULT_CLOCK: Clock = SystemClock()
