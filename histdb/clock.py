"""
Clock sources for period boundaries.

Every valid_from/valid_to assigned by the store comes from a Clock.
Timestamps are Unix milliseconds.

Invariants:
    - now_ms() never returns a value smaller than a previous call
    - ManualClock refuses to move backwards
"""

from __future__ import annotations

import threading
import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Source of monotonically non-decreasing Unix-ms timestamps."""

    def now_ms(self) -> int: ...


class SystemClock:
    """Wall clock that never goes backwards.

    If the system time steps back (NTP adjustment), the last returned
    value is repeated until wall time catches up.
    """

    def __init__(self) -> None:
        self._last = 0
        self._lock = threading.Lock()

    def now_ms(self) -> int:
        with self._lock:
            now = int(time.time() * 1000)
            if now < self._last:
                now = self._last
            self._last = now
            return now


class ManualClock:
    """Settable clock for tests and deterministic replay.

    Example:
        >>> clock = ManualClock(0)
        >>> clock.advance(10)
        10
    """

    def __init__(self, start_ms: int = 0) -> None:
        self._now = start_ms

    def now_ms(self) -> int:
        return self._now

    def set(self, ts_ms: int) -> None:
        if ts_ms < self._now:
            raise ValueError(f"Clock cannot move backwards: {ts_ms} < {self._now}")
        self._now = ts_ms

    def advance(self, delta_ms: int) -> int:
        self.set(self._now + delta_ms)
        return self._now
