"""Injectable time source.

Payment expiry, the dispute window and scheduler ticks all read the time
through an ``IClock`` so tests can move time forward without sleeping.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol

# Tests start every order at the same instant.
SIM_EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


class IClock(Protocol):
    def now(self) -> datetime:
        """Timezone-aware UTC now."""
        ...


class WallClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class SimClock:
    """Manually driven clock.  Only moves forward, via ``advance``."""

    def __init__(self, start: datetime = SIM_EPOCH) -> None:
        if start.tzinfo is None:
            raise ValueError("SimClock needs a timezone-aware start time")
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, **delta: float) -> datetime:
        """Move forward by ``timedelta(**delta)`` and return the new time."""
        step = timedelta(**delta)
        if step < timedelta(0):
            raise ValueError(f"SimClock cannot go backwards ({step})")
        self._now += step
        return self._now
