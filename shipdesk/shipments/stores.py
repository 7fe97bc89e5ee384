"""
Persistence seam for the state machine.

``DjangoShipmentStore`` is the production store. ``InMemoryShipmentStore`` keeps
unsaved model instances in dictionaries so threaded tests and dry runs never
touch the database; every read hands out a copy, like a fresh ORM fetch.
"""
import copy
import logging
import threading
from typing import Iterable, List, Optional

from django.db import transaction
from django.utils import timezone

from .exceptions import Conflict, OrderNotFound
from .models import Order, ReconciliationIssue, Shipment, ShipmentState, TERMINAL_STATES, TrackingEvent

logger = logging.getLogger(__name__)

CLOSED_FOR_TRACKING = TERMINAL_STATES + (ShipmentState.FAILED,)
CLOSED_ORDER_STATUSES = ('delivered', 'cancelled')


def stale_shipment(shipment: Shipment) -> Conflict:
    return Conflict(
        f"Shipment for order {shipment.order_id} was changed by another transition, reload and retry",
        order_id=shipment.order_id,
    )


class DjangoShipmentStore:

    def get_order(self, order_id) -> Order:
        try:
            return Order.objects.get(pk=order_id)
        except (Order.DoesNotExist, ValueError, TypeError):
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)

    def get_shipment(self, order_id) -> Optional[Shipment]:
        return Shipment.objects.select_related('order').filter(order_id=order_id).first()

    def create_shipment(self, order: Order, **fields) -> Shipment:
        with transaction.atomic():
            shipment, created = Shipment.objects.get_or_create(order=order, defaults=fields)
        if created:
            logger.info(f"Shipment record created for order {order.pk}")
        return shipment

    def save_order(self, order: Order):
        # Transitions only move the status; other columns belong to checkout and the admin
        with transaction.atomic():
            order.save(update_fields=['order_status', 'updated_at'])

    def save_shipment(self, shipment: Shipment):
        """
        Write the row only if nobody saved it since ``shipment`` was read.
        Web workers and the poller process share nothing but the database,
        so the version column is what serializes them.
        """
        shipment.check_invariants()
        expected = shipment.version
        shipment.updated_at = timezone.now()
        values = {
            f.attname: getattr(shipment, f.attname)
            for f in Shipment._meta.concrete_fields
            if not f.primary_key and f.attname not in ('order_id', 'version', 'created_at')
        }
        with transaction.atomic():
            updated = Shipment.objects.filter(pk=shipment.pk, version=expected).update(
                version=expected + 1, **values,
            )
        if not updated:
            logger.warning(f"Order {shipment.order_id}: stale shipment write refused (version {expected})")
            raise stale_shipment(shipment)
        shipment.version = expected + 1

    def add_tracking_events(self, shipment: Shipment, updates: Iterable):
        TrackingEvent.objects.bulk_create([
            TrackingEvent(
                shipment=shipment,
                occurred_at=u.occurred_at,
                status_text=u.status_text[:255],
                status_code=u.status_code[:50],
                location=u.location[:255],
            )
            for u in updates
        ])

    def tracking_events(self, order_id) -> List[TrackingEvent]:
        return list(TrackingEvent.objects.filter(shipment__order_id=order_id))

    def record_issue(self, order_id, kind: str, message: str) -> ReconciliationIssue:
        issue = ReconciliationIssue.objects.create(order_id=order_id, kind=kind, message=message)
        logger.warning(f"Reconciliation issue on order {order_id} ({kind}): {message}")
        return issue

    def open_issues(self, order_id) -> List[ReconciliationIssue]:
        return list(ReconciliationIssue.objects.filter(order_id=order_id, resolved=False))

    def open_tracking_order_ids(self) -> List[int]:
        """Orders whose shipment has an AWB and can still move."""
        return list(
            Shipment.objects.filter(awb_code__isnull=False)
            .exclude(awb_code='')
            .exclude(state__in=CLOSED_FOR_TRACKING)
            .exclude(order__order_status__in=CLOSED_ORDER_STATUSES)
            .order_by('order_id')
            .values_list('order_id', flat=True)
        )

    def find_order_id(self, provider_order_id=None, awb_code=None, channel_order_id=None) -> Optional[int]:
        if provider_order_id:
            found = Shipment.objects.filter(provider_order_id=str(provider_order_id)).values_list('order_id', flat=True).first()
            if found:
                return found
        if awb_code:
            found = Shipment.objects.filter(awb_code=str(awb_code)).values_list('order_id', flat=True).first()
            if found:
                return found
        if channel_order_id and str(channel_order_id).startswith('ORD'):
            pk = str(channel_order_id)[3:]
            if pk.isdigit() and Order.objects.filter(pk=int(pk)).exists():
                return int(pk)
        return None


class InMemoryShipmentStore:

    def __init__(self):
        self._lock = threading.Lock()
        self._orders = {}
        self._shipments = {}
        self._events = {}
        self._issues = []
        self._next_event_id = 1

    def add_order(self, order: Order) -> Order:
        """Seed an order. The order must carry its id."""
        with self._lock:
            self._orders[order.pk] = copy.deepcopy(order)
        return order

    def get_order(self, order_id) -> Order:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
            return copy.deepcopy(order)

    def get_shipment(self, order_id) -> Optional[Shipment]:
        with self._lock:
            shipment = self._shipments.get(order_id)
            if shipment is None:
                return None
            shipment = copy.deepcopy(shipment)
            shipment.order = copy.deepcopy(self._orders[order_id])
            return shipment

    def create_shipment(self, order: Order, **fields) -> Shipment:
        with self._lock:
            if order.pk not in self._shipments:
                self._shipments[order.pk] = Shipment(id=order.pk, order_id=order.pk, **fields)
        return self.get_shipment(order.pk)

    def save_order(self, order: Order):
        with self._lock:
            self._orders[order.pk] = copy.deepcopy(order)

    def save_shipment(self, shipment: Shipment):
        shipment.check_invariants()
        stored = copy.deepcopy(shipment)
        stored._state.fields_cache.pop('order', None)
        with self._lock:
            current = self._shipments.get(shipment.order_id)
            if current is not None and current.version != shipment.version:
                raise stale_shipment(shipment)
            stored.version = shipment.version + 1
            self._shipments[shipment.order_id] = stored
        shipment.version = stored.version

    def add_tracking_events(self, shipment: Shipment, updates: Iterable):
        with self._lock:
            events = self._events.setdefault(shipment.order_id, [])
            for u in updates:
                events.append(TrackingEvent(
                    id=self._next_event_id,
                    shipment_id=shipment.pk,
                    occurred_at=u.occurred_at,
                    status_text=u.status_text,
                    status_code=u.status_code,
                    location=u.location,
                ))
                self._next_event_id += 1

    def tracking_events(self, order_id) -> List[TrackingEvent]:
        with self._lock:
            return sorted(self._events.get(order_id, []), key=lambda e: (e.occurred_at, e.id))

    def record_issue(self, order_id, kind: str, message: str) -> ReconciliationIssue:
        with self._lock:
            issue = ReconciliationIssue(id=len(self._issues) + 1, order_id=order_id, kind=kind, message=message)
            self._issues.append(issue)
        logger.warning(f"Reconciliation issue on order {order_id} ({kind}): {message}")
        return issue

    def open_issues(self, order_id) -> List[ReconciliationIssue]:
        with self._lock:
            return [i for i in self._issues if i.order_id == order_id and not i.resolved]

    def open_tracking_order_ids(self) -> List[int]:
        with self._lock:
            return sorted(
                order_id for order_id, s in self._shipments.items()
                if s.awb_code and s.state not in CLOSED_FOR_TRACKING
                and self._orders[order_id].order_status not in CLOSED_ORDER_STATUSES
            )

    def find_order_id(self, provider_order_id=None, awb_code=None, channel_order_id=None) -> Optional[int]:
        with self._lock:
            for order_id, s in self._shipments.items():
                if provider_order_id and s.provider_order_id == str(provider_order_id):
                    return order_id
                if awb_code and s.awb_code == str(awb_code):
                    return order_id
            for order_id, order in self._orders.items():
                if channel_order_id and order.channel_order_id == str(channel_order_id):
                    return order_id
        return None
