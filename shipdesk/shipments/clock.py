import time
from datetime import datetime, timedelta

from django.utils import timezone


class SystemClock:
    """Wall clock for timestamps, monotonic clock for TTLs and deadlines."""

    def now(self) -> datetime:
        return timezone.now()

    def monotonic(self) -> float:
        return time.monotonic()


class FakeClock:
    """Manually advanced clock for tests and dry runs."""

    def __init__(self, start: datetime = None):
        self._now = start or timezone.now()
        self._monotonic = 0.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float):
        self._now = self._now + timedelta(seconds=seconds)
        self._monotonic += seconds
