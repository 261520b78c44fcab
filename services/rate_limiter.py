"""
Fixed-window rate limiter keyed by (subject, action).

Windows live in process memory only. The limiter gives no cross-process
guarantee, which is acceptable because a single scheduler instance serves all
requests.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Tuple

from services.clock import Clock, SystemClock


@dataclass(slots=True)
class RateWindow:
    reset_at_ms: int
    count: int = 0


class RateLimiter:
    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()
        self._windows: Dict[Tuple[str, str], RateWindow] = {}

    def check(self, subject: str, action: str, max_attempts: int = 5, window_ms: int = 60_000) -> bool:
        """
        Count one attempt and report whether it is allowed.

        The window starts on first use; once now >= reset_at the count resets
        and the window is extended to now + window_ms.
        """

        now = self._clock.now_ms()
        key = (subject, action)
        window = self._windows.get(key)
        if window is None:
            window = RateWindow(reset_at_ms=now + window_ms)
            self._windows[key] = window

        if now >= window.reset_at_ms:
            window.count = 0
            window.reset_at_ms = now + window_ms

        window.count += 1
        return window.count <= max_attempts

    def remaining_cooldown(self, subject: str, action: str) -> int:
        """Whole seconds until the window resets; 0 if there is no live window."""

        window = self._windows.get((subject, action))
        if window is None:
            return 0
        remaining_ms = window.reset_at_ms - self._clock.now_ms()
        return max(0, math.ceil(remaining_ms / 1000))

    def sweep(self) -> int:
        """Drop windows whose reset time has passed. Returns the number removed."""

        now = self._clock.now_ms()
        expired = [key for key, window in self._windows.items() if now >= window.reset_at_ms]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._windows)
