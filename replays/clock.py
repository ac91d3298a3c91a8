"""Wall-clock and monotonic time sources used by the recorder."""

from __future__ import annotations

import time
from datetime import datetime

FINAL_TIMESTAMP_FORMAT = "%Y-%m-%d_%Hh%Mm%Ss"
LOG_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


class Clock:
    """Time source. Tests substitute a fixed clock."""

    def wall_ms(self) -> int:
        return int(time.time() * 1000)

    def monotonic_ms(self) -> int:
        return int(time.monotonic() * 1000)

    def now(self) -> datetime:
        return datetime.now()

    def wall_timestamp(self) -> str:
        """Return the timestamp prefix used by final clip names."""
        return self.now().strftime(FINAL_TIMESTAMP_FORMAT)


class SystemClock(Clock):
    pass


class FixedClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, wall_ms: int = 0, *, when: datetime | None = None) -> None:
        self._wall_ms = int(wall_ms)
        self._when = when or datetime(2025, 3, 29, 3, 34, 34)

    def wall_ms(self) -> int:
        return self._wall_ms

    def monotonic_ms(self) -> int:
        return self._wall_ms

    def now(self) -> datetime:
        return self._when

    def advance(self, millis: int) -> int:
        self._wall_ms += int(millis)
        return self._wall_ms

    def set(self, wall_ms: int, *, when: datetime | None = None) -> None:
        self._wall_ms = int(wall_ms)
        if when is not None:
            self._when = when


SYSTEM_CLOCK = SystemClock()
