"""
Injectable time source.

All engine services read "now" through a Clock so that slot validation,
deadlines and in-flight ages can be driven by a settable clock.
"""

import time
from datetime import date, datetime


class Clock:
    """Time source interface."""

    def now(self) -> datetime:
        raise NotImplementedError

    def today(self) -> date:
        return self.now().date()

    def monotonic(self) -> float:
        raise NotImplementedError

    def sleep(self, seconds: float) -> None:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall clock (naive UTC, matching the stored timestamps)."""

    def now(self) -> datetime:
        return datetime.utcnow()

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)
