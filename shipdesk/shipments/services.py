"""
Entry point for everything that drives shipments: admin API views, admin
actions, the webhook and the poller command all go through ShipmentOrchestrator.
"""
import logging
import threading
from datetime import date
from decimal import Decimal
from typing import Iterable, List

from django.apps import apps
from django.conf import settings

from .bulk import BulkOperationCoordinator, BulkResult
from .clock import SystemClock
from .courier_selector import CourierSelector
from .exceptions import ShipmentError
from .gateway import LogisticsGateway, PickupLocation
from .locks import OrderLocks
from .scheduling import IntervalScheduler, ManualScheduler
from .state_machine import OrderShipmentStateMachine, TransitionResult
from .stores import DjangoShipmentStore
from .tracking import TrackingPoller
from .wallet import WalletBalance, WalletBalanceCache

logger = logging.getLogger(__name__)


class ShipmentOrchestrator:

    def __init__(self, gateway, store, clock=None, scheduler=None, locks: OrderLocks = None,
                 default_pickup_location: str = 'Primary', pickup_postcode: str = '110001',
                 wallet_ttl: float = 300, min_wallet_balance=Decimal('100'),
                 bulk_batch_size: int = 10, bulk_max_orders: int = 100, bulk_max_workers: int = 4,
                 tracking_interval: float = 30, tracking_max_workers: int = 4, return_window_days: int = 30):
        self.gateway = gateway
        self.store = store
        self.clock = clock or SystemClock()
        self.wallet = WalletBalanceCache(gateway.get_wallet_balance, ttl=wallet_ttl, clock=self.clock,
                                         minimum=min_wallet_balance)
        self.machine = OrderShipmentStateMachine(gateway, store, locks=locks, clock=self.clock,
                                                 wallet=self.wallet,
                                                 default_pickup_location=default_pickup_location,
                                                 return_window_days=return_window_days)
        self.selector = CourierSelector(gateway, self.machine, store, pickup_postcode)
        self.bulk = BulkOperationCoordinator(self.machine, batch_size=bulk_batch_size,
                                             max_orders=bulk_max_orders, max_workers=bulk_max_workers,
                                             clock=self.clock)
        self.poller = TrackingPoller(self.machine, store, scheduler or ManualScheduler(),
                                     interval=tracking_interval, max_workers=tracking_max_workers,
                                     clock=self.clock)

    @classmethod
    def from_settings(cls, **overrides):
        options = {
            'gateway': LogisticsGateway.from_settings(),
            'store': DjangoShipmentStore(),
            'scheduler': IntervalScheduler(),
            'locks': OrderLocks(timeout=settings.LOGISTICS_ORDER_LOCK_TIMEOUT),
            'default_pickup_location': settings.LOGISTICS_DEFAULT_PICKUP_LOCATION,
            'pickup_postcode': settings.LOGISTICS_PICKUP_PINCODE,
            'wallet_ttl': settings.LOGISTICS_WALLET_TTL,
            'min_wallet_balance': Decimal(str(settings.LOGISTICS_MIN_WALLET_BALANCE)),
            'bulk_batch_size': settings.LOGISTICS_BULK_BATCH_SIZE,
            'bulk_max_orders': settings.LOGISTICS_BULK_MAX_ORDERS,
            'bulk_max_workers': settings.LOGISTICS_BULK_MAX_WORKERS,
            'tracking_interval': settings.LOGISTICS_TRACKING_INTERVAL,
            'tracking_max_workers': settings.LOGISTICS_TRACKING_MAX_WORKERS,
            'return_window_days': settings.LOGISTICS_RETURN_WINDOW_DAYS,
        }
        options.update(overrides)
        return cls(**options)

    @staticmethod
    def _failed(order_id, operation: str, error: ShipmentError) -> TransitionResult:
        logger.error(f"Order {order_id}: {operation} failed ({error.kind}): {error}")
        return TransitionResult(order_id=order_id, operation=operation, status='failed', error=error)

    # Order intake

    def accept_order(self, order_id) -> TransitionResult:
        return self.machine.accept(order_id)

    def reject_order(self, order_id, reason: str = '') -> TransitionResult:
        return self.machine.reject(order_id, reason)

    # Lifecycle

    def register_order(self, order_id) -> TransitionResult:
        return self.machine.register(order_id)

    def create_shipment(self, order_id, pickup_location: str = None) -> TransitionResult:
        return self.machine.create_shipment(order_id, pickup_location=pickup_location)

    def generate_awb(self, order_id, courier_id=None) -> TransitionResult:
        return self.machine.generate_awb(order_id, courier_id=courier_id)

    def courier_options(self, order_id) -> TransitionResult:
        """Ranked courier quotes for the order's route."""
        try:
            quotes = self.selector.quotes_for(order_id)
        except ShipmentError as e:
            return self._failed(order_id, 'courier_options', e)
        options = self.selector.options(quotes)
        best = self.selector.pick_best(quotes)
        return TransitionResult(
            order_id=order_id,
            operation='courier_options',
            status='ok' if best else 'no_service',
            data={
                'options': [option.as_dict() for option in options],
                'best_courier_id': best.courier_id if best else None,
            },
        )

    def assign_courier(self, order_id, courier_id) -> TransitionResult:
        return self.selector.assign(order_id, courier_id)

    def auto_assign_courier(self, order_id) -> TransitionResult:
        try:
            return self.selector.auto_assign(order_id)
        except ShipmentError as e:
            return self._failed(order_id, 'assign_courier', e)

    def schedule_pickup(self, order_id, pickup_date: date = None) -> TransitionResult:
        return self.machine.schedule_pickup(order_id, pickup_date=pickup_date)

    def print_label(self, order_id) -> TransitionResult:
        return self.machine.fetch_label(order_id)

    def cancel_order(self, order_id, reason: str = '') -> TransitionResult:
        return self.machine.cancel(order_id, reason=reason)

    # Returns

    def request_return(self, order_id, reason: str) -> TransitionResult:
        return self.machine.request_return(order_id, reason)

    def review_return(self, order_id, approve: bool, note: str = '') -> TransitionResult:
        return self.machine.review_return(order_id, approve, note=note)

    def create_return_shipment(self, order_id) -> TransitionResult:
        return self.machine.create_return_shipment(order_id)

    def bulk_execute(self, kind: str, order_ids: Iterable, deadline: float = None,
                     cancel_event: threading.Event = None, **params) -> BulkResult:
        return self.bulk.execute(kind, order_ids, deadline=deadline, cancel_event=cancel_event, **params)

    # Tracking

    def refresh_tracking(self, order_id) -> TransitionResult:
        return self.poller.refresh(order_id)

    def apply_tracking(self, order_id, updates, track_url: str = None) -> TransitionResult:
        return self.machine.apply_tracking(order_id, updates, track_url=track_url)

    # Account

    def get_wallet_balance(self, force_refresh: bool = False) -> WalletBalance:
        if force_refresh:
            return self.wallet.force_refresh()
        return self.wallet.get()

    def pickup_locations(self) -> List[PickupLocation]:
        return self.gateway.list_pickup_locations()


def get_orchestrator() -> ShipmentOrchestrator:
    return apps.get_app_config('shipments').orchestrator
