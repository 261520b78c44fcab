"""
Clock collaborator.

All cooldown, restock and rate-limit math reads time from a Clock so tests can
substitute a ManualClock and advance it deterministically.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol

from domain.time import require_utc_timestamp


class Clock(Protocol):
    def now(self) -> datetime: ...

    def now_ms(self) -> int: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def now_ms(self) -> int:
        return int(self.now().timestamp() * 1000)


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime):
        require_utc_timestamp("start", start)
        self._now = start

    def now(self) -> datetime:
        return self._now

    def now_ms(self) -> int:
        return int(self._now.timestamp() * 1000)

    def advance(self, delta: timedelta = timedelta(0), **kwargs: float) -> datetime:
        """advance(timedelta(hours=1)) or advance(hours=1)."""

        self._now = self._now + delta + timedelta(**kwargs)
        return self._now

    def set(self, value: datetime) -> None:
        require_utc_timestamp("value", value)
        self._now = value
