"""
Bulk actions over many orders.

Each order goes through the same state machine transition as a single action;
one order failing never stops the others, and the caller always gets one result
per order id.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .clock import SystemClock
from .exceptions import InvalidTransition, ValidationError
from .state_machine import TransitionResult

logger = logging.getLogger(__name__)

SUCCEEDED = 'succeeded'
FAILED = 'failed'
SKIPPED = 'skipped'
NOT_ATTEMPTED = 'not_attempted'


@dataclass
class BulkItemResult:
    order_id: int
    status: str
    state: Optional[str] = None
    error_kind: Optional[str] = None
    message: str = ''
    data: Dict = field(default_factory=dict)

    def as_dict(self):
        data = {'order_id': self.order_id, 'status': self.status, 'state': self.state}
        if self.error_kind:
            data['error_kind'] = self.error_kind
        if self.message:
            data['message'] = self.message
        if self.data:
            data['data'] = self.data
        return data


@dataclass
class BulkResult:
    kind: str
    items: List[BulkItemResult] = field(default_factory=list)
    stopped: bool = False

    def count(self, status: str) -> int:
        return sum(1 for item in self.items if item.status == status)

    @property
    def success(self) -> bool:
        return self.count(SUCCEEDED) > 0

    @property
    def summary(self) -> Dict[str, int]:
        return {status: self.count(status) for status in (SUCCEEDED, FAILED, SKIPPED, NOT_ATTEMPTED)}

    def as_dict(self):
        return {
            'kind': self.kind,
            'success': self.success,
            'stopped': self.stopped,
            'summary': self.summary,
            'results': [item.as_dict() for item in self.items],
        }


def item_from_transition(order_id, result: TransitionResult) -> BulkItemResult:
    if result.ok:
        return BulkItemResult(order_id=order_id, status=SUCCEEDED, state=result.state,
                              message=result.message, data=result.data)
    status = SKIPPED if isinstance(result.error, InvalidTransition) else FAILED
    return BulkItemResult(order_id=order_id, status=status, state=result.state,
                          error_kind=result.error_kind, message=result.message)


class BulkOperationCoordinator:

    def __init__(self, machine, batch_size: int = 10, max_orders: int = 100, max_workers: int = 4,
                 clock=None):
        self.machine = machine
        self.batch_size = max(1, min(batch_size, 10))
        self.max_orders = max_orders
        self.max_workers = max_workers
        self.clock = clock or SystemClock()
        self.operations = {
            'register_orders': lambda order_id, **p: machine.register(order_id),
            'create_shipments': lambda order_id, **p: machine.create_shipment(
                order_id, pickup_location=p.get('pickup_location')),
            'generate_awb': lambda order_id, **p: machine.generate_awb(order_id, courier_id=p.get('courier_id')),
            'schedule_pickup': lambda order_id, **p: machine.schedule_pickup(
                order_id, pickup_date=p.get('pickup_date')),
            'print_labels': lambda order_id, **p: machine.fetch_label(order_id),
            'cancel_orders': lambda order_id, **p: machine.cancel(order_id, reason=p.get('reason', '')),
            'create_return_shipments': lambda order_id, **p: machine.create_return_shipment(order_id),
        }

    @property
    def kinds(self) -> List[str]:
        return sorted(self.operations)

    def execute(self, kind: str, order_ids, deadline: float = None,
                cancel_event: threading.Event = None, **params) -> BulkResult:
        """
        Run ``kind`` over ``order_ids`` in batches.

        ``deadline`` (seconds from now) and ``cancel_event`` stop dispatch of new
        items; anything already running finishes and is reported, the rest come
        back as ``not_attempted``.
        """
        operation = self.operations.get(kind)
        if operation is None:
            raise ValidationError(f"Unknown bulk operation '{kind}'. Choose from: {', '.join(self.kinds)}")

        order_ids = list(dict.fromkeys(order_ids))
        if not order_ids:
            raise ValidationError("No orders selected")
        if len(order_ids) > self.max_orders:
            raise ValidationError(
                f"Bulk operations are limited to {self.max_orders} orders, got {len(order_ids)}",
                details={'limit': self.max_orders},
            )

        stop_at = self.clock.monotonic() + deadline if deadline is not None else None

        def should_stop():
            if cancel_event is not None and cancel_event.is_set():
                return True
            return stop_at is not None and self.clock.monotonic() >= stop_at

        logger.info(f"Bulk {kind}: {len(order_ids)} order(s) in batches of {self.batch_size}")
        result = BulkResult(kind=kind)
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=f'bulk-{kind}') as pool:
            for start in range(0, len(order_ids), self.batch_size):
                batch = order_ids[start:start + self.batch_size]
                if should_stop():
                    result.stopped = True
                    result.items.extend(self._not_attempted(order_ids[start:]))
                    break
                futures = [(order_id, pool.submit(self._dispatch, operation, order_id, should_stop, params))
                           for order_id in batch]
                for order_id, future in futures:
                    result.items.append(self._collect(kind, order_id, future))

        if any(item.status == NOT_ATTEMPTED for item in result.items):
            result.stopped = True
        logger.info(f"Bulk {kind} finished: {result.summary}")
        return result

    @staticmethod
    def _dispatch(operation, order_id, should_stop, params) -> BulkItemResult:
        if should_stop():
            return BulkItemResult(order_id=order_id, status=NOT_ATTEMPTED, message='Stopped before dispatch')
        return item_from_transition(order_id, operation(order_id, **params))

    @staticmethod
    def _collect(kind, order_id, future) -> BulkItemResult:
        try:
            return future.result()
        except Exception as e:
            logger.exception(f"Bulk {kind}: unexpected error on order {order_id}")
            return BulkItemResult(order_id=order_id, status=FAILED, error_kind='error', message=str(e))

    @staticmethod
    def _not_attempted(order_ids) -> List[BulkItemResult]:
        return [BulkItemResult(order_id=order_id, status=NOT_ATTEMPTED, message='Stopped before dispatch')
                for order_id in order_ids]
