from __future__ import annotations

import time
from typing import Protocol


class TimeSource(Protocol):
    def now(self) -> float:
        ...

    def since(self, instant: float) -> float:
        ...


class SystemTimeSource:
    """Wall-clock time source backed by ``time.perf_counter``."""

    def now(self) -> float:
        return time.perf_counter()

    def since(self, instant: float) -> float:
        return max(time.perf_counter() - instant, 0.0)


class FakeTimeSource:
    """Manually advanced time source for deterministic timing tests."""

    def __init__(self, start: float = 0.0) -> None:
        self.current = start

    def now(self) -> float:
        return self.current

    def since(self, instant: float) -> float:
        return max(self.current - instant, 0.0)

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("seconds must be >= 0")
        self.current += seconds
