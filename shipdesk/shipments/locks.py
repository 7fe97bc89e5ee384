import logging
import threading
from contextlib import contextmanager

from .exceptions import Conflict

logger = logging.getLogger(__name__)


class OrderLocks:
    """
    One mutex per order id, so at most one transition per order runs at a time.
    Entries are dropped once nobody holds or waits on them.
    """

    def __init__(self, timeout: float = 5):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks = {}

    @contextmanager
    def hold(self, order_id, timeout: float = None):
        wait = self.timeout if timeout is None else timeout
        with self._guard:
            entry = self._locks.setdefault(order_id, [threading.Lock(), 0])
            entry[1] += 1

        acquired = entry[0].acquire(timeout=wait)
        try:
            if not acquired:
                logger.warning(f"Order {order_id}: another transition still running after {wait}s")
                raise Conflict(f"Order {order_id} is busy with another operation", order_id=order_id)
            try:
                yield
            finally:
                entry[0].release()
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(order_id, None)
