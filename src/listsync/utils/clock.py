from __future__ import annotations

import threading
import time


class Clock:
    """Source of wall-clock seconds. Swapped for `ManualClock` in tests."""

    def now(self) -> float:
        return time.time()


class SystemClock(Clock):
    pass


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> float:
        with self._lock:
            self._now += seconds
            return self._now

    def set(self, value: float) -> None:
        with self._lock:
            self._now = value
