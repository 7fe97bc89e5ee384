import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from .clock import SystemClock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WalletBalance:
    amount: Decimal
    fetched_at: datetime
    ttl: float
    minimum: Decimal = Decimal('100')

    @property
    def is_low(self) -> bool:
        return self.amount < self.minimum

    def as_dict(self):
        return {
            'balance': str(self.amount),
            'fetched_at': self.fetched_at.isoformat(),
            'ttl': self.ttl,
            'is_low': self.is_low,
            'minimum': str(self.minimum),
        }


class _Flight:

    def __init__(self):
        self.done = threading.Event()
        self.result = None
        self.error = None


class WalletBalanceCache:
    """
    Provider wallet balance with a TTL.

    Concurrent misses share one upstream call: the first caller fetches, the rest
    wait on its flight and get the same value or the same error.
    """

    def __init__(self, fetch: Callable[[], Decimal], ttl: float = 300, clock=None,
                 minimum: Decimal = Decimal('100')):
        self.fetch = fetch
        self.ttl = ttl
        self.clock = clock or SystemClock()
        self.minimum = Decimal(minimum)
        self._lock = threading.Lock()
        self._value: Optional[WalletBalance] = None
        self._expires_at = 0.0
        self._flight: Optional[_Flight] = None

    @property
    def cached(self) -> Optional[WalletBalance]:
        with self._lock:
            return self._value

    def get(self) -> WalletBalance:
        with self._lock:
            if self._value is not None and self.clock.monotonic() < self._expires_at:
                return self._value
        return self._refresh()

    def force_refresh(self) -> WalletBalance:
        return self._refresh()

    def invalidate(self):
        with self._lock:
            self._value = None
            self._expires_at = 0.0
        logger.info("Wallet balance cache invalidated")

    def _refresh(self) -> WalletBalance:
        with self._lock:
            flight = self._flight
            leader = flight is None
            if leader:
                flight = self._flight = _Flight()

        if not leader:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.result

        try:
            amount = self.fetch()
            value = WalletBalance(amount=Decimal(amount), fetched_at=self.clock.now(),
                                  ttl=self.ttl, minimum=self.minimum)
            with self._lock:
                self._value = value
                self._expires_at = self.clock.monotonic() + self.ttl
            flight.result = value
            if value.is_low:
                logger.warning(f"Wallet balance Rs {value.amount} is below Rs {self.minimum}")
            return value
        except Exception as e:
            flight.error = e
            logger.error(f"Wallet balance refresh failed: {e}")
            raise
        finally:
            with self._lock:
                self._flight = None
            flight.done.set()
