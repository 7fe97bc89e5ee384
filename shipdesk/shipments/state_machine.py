"""
Per-order shipment lifecycle.

    accepted -> registered -> shipment_created -> awb_generated -> courier_assigned
             -> pickup_scheduled -> in_transit -> delivered

``cancelled`` and ``failed`` are reachable from any non-terminal state, ``rejected``
only from ``accepted`` before the provider knows the order. Every transition runs
under the order's lock, calls the gateway, persists through the store and sends
``shipment_state_changed``. A failed transition leaves the stored state alone and
records the error on the shipment. The lock only covers this process; the store's
versioned save turns a cross-process race into a ``Conflict`` for the later writer.

A delivered order can go back through its own return track:

    requested -> approved -> registered -> awb_generated
              -> rejected
"""
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional

from django.conf import settings
from django.utils import timezone

from .clock import SystemClock
from .exceptions import (
    AmbiguousProviderError,
    Conflict,
    DuplicateOrder,
    InsufficientBalance,
    InvalidTransition,
    PermanentProviderError,
    ProviderError,
    ReconciliationError,
    ShipmentError,
    ValidationError,
)
from .gateway import AwbAssignment, CourierQuote, PickupConfirmation, build_order_payload, build_return_payload
from .locks import OrderLocks
from .models import ReturnState, Shipment, ShipmentState, TERMINAL_STATES
from .signals import reconciliation_required, shipment_state_changed

logger = logging.getLogger(__name__)

S = ShipmentState

CLOSED_STATES = TERMINAL_STATES + (S.FAILED,)
AWB_STATES = (S.AWB_GENERATED, S.COURIER_ASSIGNED, S.PICKUP_SCHEDULED)
PRE_PICKUP_STATES = (S.SHIPMENT_CREATED,) + AWB_STATES

# Operations that write at the provider and can leave an unknown outcome behind
REMOTE_WRITES = ('register', 'create_shipment', 'generate_awb', 'assign_courier', 'schedule_pickup',
                 'create_return_shipment')

PICKED_UP_STATUSES = {'PICKED UP', 'SHIPPED'}
IN_TRANSIT_STATUSES = {
    'IN TRANSIT', 'OUT FOR DELIVERY', 'REACHED AT DESTINATION HUB',
    'REACHED DESTINATION HUB', 'UNDELIVERED', 'DELAYED',
}
FAILED_STATUSES = {'LOST', 'DAMAGED', 'DESTROYED', 'DISPOSED OFF'}
CANCELLED_STATUSES = {'CANCELLED', 'CANCELED', 'CANCELLATION REQUESTED'}


def classify_status(status_text: str) -> str:
    """Map a provider tracking status onto picked_up / in_transit / delivered / cancelled / failed / info."""
    text = ' '.join((status_text or '').upper().replace('_', ' ').split())
    if text.startswith('RTO') or text in FAILED_STATUSES:
        return 'failed'
    if text == 'DELIVERED':
        return 'delivered'
    if text in CANCELLED_STATUSES:
        return 'cancelled'
    if text in PICKED_UP_STATUSES:
        return 'picked_up'
    if text in IN_TRANSIT_STATUSES:
        return 'in_transit'
    return 'info'


@dataclass
class TransitionResult:
    order_id: int
    operation: str
    status: str
    state: Optional[str] = None
    previous_state: Optional[str] = None
    error: Optional[ShipmentError] = None
    data: Dict = field(default_factory=dict)
    issues: List[ShipmentError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status != 'failed'

    @property
    def changed(self) -> bool:
        return self.status == 'ok'

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind if self.error else None

    @property
    def message(self) -> str:
        if self.error:
            return self.error.message
        if self.issues:
            return '; '.join(issue.message for issue in self.issues)
        return self.data.get('message', '')

    @property
    def needs_attention(self) -> bool:
        """True when an operator has to step in rather than just retry later."""
        if self.issues:
            return True
        return self.error is not None and not self.error.retryable

    def as_dict(self) -> Dict:
        data = {
            'order_id': self.order_id,
            'operation': self.operation,
            'status': self.status,
            'state': self.state,
            'previous_state': self.previous_state,
            'needs_attention': self.needs_attention,
            'data': self.data,
        }
        if self.error:
            data['error'] = self.error.as_dict()
        if self.issues:
            data['issues'] = [issue.as_dict() for issue in self.issues]
        return data


class OrderShipmentStateMachine:

    def __init__(self, gateway, store, locks: OrderLocks = None, clock=None, wallet=None,
                 default_pickup_location: str = None, return_window_days: int = None):
        self.gateway = gateway
        self.store = store
        self.locks = locks or OrderLocks()
        self.clock = clock or SystemClock()
        self.wallet = wallet
        self.default_pickup_location = default_pickup_location or settings.LOGISTICS_DEFAULT_PICKUP_LOCATION
        if return_window_days is None:
            return_window_days = settings.LOGISTICS_RETURN_WINDOW_DAYS
        self.return_window_days = return_window_days

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _run(self, order_id, operation: str, body) -> TransitionResult:
        try:
            with self.locks.hold(order_id):
                shipment = None
                try:
                    order = self.store.get_order(order_id)
                    shipment = self.store.get_shipment(order_id)
                    return body(order, shipment)
                except ShipmentError as e:
                    if shipment is not None and not isinstance(e, ValidationError):
                        shipment = self._record_failure(order_id, operation, e)
                    return self._failure(order_id, operation, e, shipment)
        except Conflict as e:
            return self._failure(order_id, operation, e, None)

    def _failure(self, order_id, operation, error: ShipmentError, shipment) -> TransitionResult:
        state = shipment.state if shipment is not None else None
        if isinstance(error, ValidationError):
            logger.warning(f"Order {order_id}: {operation} refused: {error}")
        else:
            logger.error(f"Order {order_id}: {operation} failed ({error.kind}): {error}")
        return TransitionResult(order_id=order_id, operation=operation, status='failed',
                                state=state, previous_state=state, error=error)

    def _record_failure(self, order_id, operation, error: ShipmentError):
        shipment = self.store.get_shipment(order_id)
        shipment.last_error_kind = error.kind
        shipment.last_error_message = f"{operation}: {error.message}"
        shipment.last_error_at = self.clock.now()
        # A lost write, or a result that could not be stored, may exist at the provider
        if operation in REMOTE_WRITES and isinstance(error, (AmbiguousProviderError, Conflict)):
            shipment.unconfirmed_operation = operation
        try:
            self.store.save_shipment(shipment)
        except Conflict:
            logger.warning(f"Order {order_id}: could not record {operation} failure, shipment changed meanwhile")
        return shipment

    def _commit(self, shipment: Shipment, previous_state, operation: str, order=None):
        shipment.last_error_kind = ''
        shipment.last_error_message = ''
        shipment.last_error_at = None
        if operation in REMOTE_WRITES:
            shipment.unconfirmed_operation = ''
        # Shipment first: a stale copy is refused before the order row is touched
        self.store.save_shipment(shipment)
        if order is not None:
            self.store.save_order(order)
        if shipment.state != previous_state:
            self._emit(shipment, previous_state, operation)

    def _emit(self, shipment: Shipment, previous_state, operation: str):
        logger.info(f"Order {shipment.order_id}: {previous_state or '-'} -> {shipment.state} ({operation})")
        shipment_state_changed.send(
            sender=Shipment,
            order_id=shipment.order_id,
            shipment=shipment,
            previous_state=previous_state,
            state=shipment.state,
            operation=operation,
        )

    def _reconcile(self, order_id, kind: str, message: str) -> ReconciliationError:
        self.store.record_issue(order_id, kind, message)
        reconciliation_required.send(sender=Shipment, order_id=order_id, kind=kind, message=message)
        return ReconciliationError(message, order_id=order_id, details={'issue': kind})

    @staticmethod
    def _result(shipment: Shipment, operation: str, previous_state, status: str = 'ok',
                issues=None, **data) -> TransitionResult:
        return TransitionResult(
            order_id=shipment.order_id,
            operation=operation,
            status=status,
            state=shipment.state,
            previous_state=previous_state,
            data=data,
            issues=issues or [],
        )

    @staticmethod
    def _require(order, shipment) -> Shipment:
        if shipment is None:
            raise InvalidTransition(f"Order {order.pk} has not been accepted for shipping", order_id=order.pk)
        return shipment

    @staticmethod
    def _guard(shipment: Shipment, allowed, operation: str):
        if shipment.state not in allowed:
            raise InvalidTransition(
                f"Cannot {operation.replace('_', ' ')} order {shipment.order_id} in state {shipment.state}",
                order_id=shipment.order_id,
            )

    def _today(self) -> date:
        return timezone.localtime(self.clock.now()).date()

    # ------------------------------------------------------------------
    # Acceptance
    # ------------------------------------------------------------------

    def accept(self, order_id) -> TransitionResult:
        def body(order, shipment):
            if shipment is not None and order.order_status != 'pending':
                return self._result(shipment, 'accept', shipment.state, status='noop',
                                    message='Order already accepted')
            if shipment is None and order.order_status in ('accepted', 'processing'):
                # Status was set outside the state machine; give the order its shipment record
                logger.warning(f"Order {order.pk} is {order.order_status} without a shipment record, creating it")
                shipment = self.store.create_shipment(order, pickup_location=self.default_pickup_location)
                self._emit(shipment, None, 'accept')
                return self._result(shipment, 'accept', None, repaired=True)
            if order.order_status != 'pending':
                raise InvalidTransition(
                    f"Order {order.pk} is {order.order_status}, only pending orders can be accepted",
                    order_id=order.pk,
                )
            order.order_status = 'accepted'
            self.store.save_order(order)
            shipment = self.store.create_shipment(order, pickup_location=self.default_pickup_location)
            self._emit(shipment, None, 'accept')
            return self._result(shipment, 'accept', None)

        return self._run(order_id, 'accept', body)

    def reject(self, order_id, reason: str = '') -> TransitionResult:
        def body(order, shipment):
            if order.order_status == 'rejected':
                return TransitionResult(order_id=order.pk, operation='reject', status='noop', state=S.REJECTED)
            if shipment is not None and (shipment.state != S.ACCEPTED or shipment.provider_order_id):
                raise InvalidTransition(
                    f"Order {order.pk} is already with the provider, cancel it instead", order_id=order.pk,
                )
            if shipment is None and order.order_status != 'pending':
                raise InvalidTransition(f"Order {order.pk} is {order.order_status}", order_id=order.pk)

            order.order_status = 'rejected'
            logger.info(f"Order {order.pk} rejected: {reason or 'no reason given'}")
            if shipment is None:
                self.store.save_order(order)
                return TransitionResult(order_id=order.pk, operation='reject', status='ok',
                                        state=S.REJECTED, data={'reason': reason})
            previous = shipment.state
            shipment.state = S.REJECTED
            self._commit(shipment, previous, 'reject', order=order)
            return self._result(shipment, 'reject', previous, reason=reason)

        return self._run(order_id, 'reject', body)

    # ------------------------------------------------------------------
    # Registration and shipment creation
    # ------------------------------------------------------------------

    @staticmethod
    def _unconfirmed(shipment: Shipment, *operations) -> bool:
        """True when an earlier attempt at one of ``operations`` may have landed unrecorded."""
        return shipment.unconfirmed_operation in operations

    def _register_remote(self, order, shipment: Shipment, pickup_location: str):
        payload = build_order_payload(order, pickup_location)
        provider_order = None
        if self._unconfirmed(shipment, 'register', 'create_shipment'):
            provider_order = self.gateway.find_order(order.channel_order_id)
            if provider_order is not None:
                logger.warning(f"Order {order.pk}: adopting provider order {provider_order.order_id} "
                               f"from an unconfirmed earlier attempt")
        try:
            if provider_order is None:
                provider_order = self.gateway.create_order(payload)
        except DuplicateOrder:
            logger.info(f"Order {order.pk} already registered at provider, fetching existing registration")
            provider_order = self.gateway.find_order(order.channel_order_id)
            if provider_order is None:
                raise PermanentProviderError(
                    f"Provider reports {order.channel_order_id} as a duplicate but cannot find it",
                    order_id=order.pk,
                )
        previous = shipment.state
        shipment.provider_order_id = provider_order.order_id
        shipment.state = S.REGISTERED
        order.order_status = 'processing'
        self._commit(shipment, previous, 'register', order=order)

    def register(self, order_id) -> TransitionResult:
        def body(order, shipment):
            shipment = self._require(order, shipment)
            if shipment.provider_order_id:
                return self._result(shipment, 'register', shipment.state, status='noop',
                                    provider_order_id=shipment.provider_order_id)
            self._guard(shipment, (S.ACCEPTED,), 'register')
            if order.order_status not in ('accepted', 'processing'):
                raise InvalidTransition(f"Order {order.pk} is {order.order_status}", order_id=order.pk)
            previous = shipment.state
            self._register_remote(order, shipment, shipment.pickup_location or self.default_pickup_location)
            return self._result(shipment, 'register', previous, provider_order_id=shipment.provider_order_id)

        return self._run(order_id, 'register', body)

    def create_shipment(self, order_id, pickup_location: str = None) -> TransitionResult:
        """Create the provider shipment, registering the order first if needed."""
        def body(order, shipment):
            shipment = self._require(order, shipment)
            if shipment.shipment_id:
                raise InvalidTransition(
                    f"Order {order.pk} already has shipment {shipment.shipment_id}", order_id=order.pk,
                )
            self._guard(shipment, (S.ACCEPTED, S.REGISTERED), 'create_shipment')
            location = pickup_location or shipment.pickup_location or self.default_pickup_location
            previous = shipment.state

            if shipment.provider_order_id and self._unconfirmed(shipment, 'create_shipment'):
                existing = self.gateway.get_order(shipment.provider_order_id).shipment_id
                if existing:
                    logger.warning(f"Order {order.pk}: adopting shipment {existing} from an unconfirmed earlier attempt")
                    shipment.shipment_id = existing
                    shipment.pickup_location = location
                    shipment.state = S.SHIPMENT_CREATED
                    self._commit(shipment, previous, 'create_shipment')
                    return self._result(shipment, 'create_shipment', previous, shipment_id=existing, adopted=True)

            if not shipment.provider_order_id:
                if order.order_status not in ('accepted', 'processing'):
                    raise InvalidTransition(f"Order {order.pk} is {order.order_status}", order_id=order.pk)
                self._register_remote(order, shipment, location)

            missing = order.missing_shipping_fields()
            if missing:
                raise PermanentProviderError(
                    f"Order {order.pk} is missing shipping data: {', '.join(missing)}",
                    order_id=order.pk,
                    details={'missing': missing},
                )

            package = {
                'weight': float(order.weight),
                'length': order.length,
                'breadth': order.breadth,
                'height': order.height,
            }
            registered_state = shipment.state
            shipment.shipment_id = self.gateway.create_shipment(shipment.provider_order_id, location, package)
            shipment.pickup_location = location
            shipment.state = S.SHIPMENT_CREATED
            self._commit(shipment, registered_state, 'create_shipment')
            return self._result(shipment, 'create_shipment', previous, shipment_id=shipment.shipment_id)

        return self._run(order_id, 'create_shipment', body)

    # ------------------------------------------------------------------
    # AWB and courier
    # ------------------------------------------------------------------

    def _landed_awb(self, shipment_id, courier_id=None, reassign=False) -> Optional[AwbAssignment]:
        """The AWB an unconfirmed earlier request left at the provider, if it matches this one."""
        details = self.gateway.get_shipment(shipment_id)
        if not details.awb_code:
            return None
        if reassign and str(details.courier_id) != str(courier_id):
            return None
        logger.warning(f"Shipment {shipment_id}: adopting AWB {details.awb_code} from an unconfirmed earlier attempt")
        return AwbAssignment(awb_code=details.awb_code, courier_id=details.courier_id,
                             courier_name=details.courier_name)

    def _request_awb(self, shipment: Shipment, courier_id=None, reassign=False, is_return=False) -> AwbAssignment:
        shipment_id = shipment.return_shipment_id if is_return else shipment.shipment_id
        operations = ('create_return_shipment',) if is_return else ('generate_awb', 'assign_courier')
        if self._unconfirmed(shipment, *operations):
            landed = self._landed_awb(shipment_id, courier_id, reassign)
            if landed is not None:
                return landed
        try:
            return self.gateway.generate_awb(shipment_id, courier_id=courier_id, reassign=reassign,
                                             is_return=is_return)
        except InsufficientBalance:
            if self.wallet is not None:
                self.wallet.invalidate()
            raise

    @staticmethod
    def _apply_assignment(shipment: Shipment, assignment: AwbAssignment, quote: CourierQuote = None):
        shipment.awb_code = assignment.awb_code
        shipment.courier_id = assignment.courier_id
        shipment.courier_name = assignment.courier_name
        shipment.courier_estimated_days = assignment.estimated_days
        shipment.freight_charge = assignment.freight_charge
        if assignment.tracking_url:
            shipment.tracking_url = assignment.tracking_url
        if quote is not None:
            shipment.courier_id = shipment.courier_id or quote.courier_id
            shipment.courier_name = shipment.courier_name or quote.name
            shipment.courier_estimated_days = shipment.courier_estimated_days or quote.estimated_days
            shipment.freight_charge = shipment.freight_charge or quote.freight_charge
            shipment.cod_charge = quote.cod_charge

    def generate_awb(self, order_id, courier_id=None) -> TransitionResult:
        def body(order, shipment):
            shipment = self._require(order, shipment)
            if shipment.awb_code:
                raise InvalidTransition(f"Order {order.pk} already has AWB {shipment.awb_code}", order_id=order.pk)
            if not shipment.shipment_id:
                raise InvalidTransition(f"Order {order.pk} has no shipment yet", order_id=order.pk)
            self._guard(shipment, (S.SHIPMENT_CREATED,), 'generate_awb')

            assignment = self._request_awb(shipment, courier_id)
            previous = shipment.state
            self._apply_assignment(shipment, assignment)
            if courier_id and not shipment.courier_id:
                shipment.courier_id = str(courier_id)
            shipment.state = S.COURIER_ASSIGNED if shipment.has_courier else S.AWB_GENERATED
            self._commit(shipment, previous, 'generate_awb')
            return self._result(shipment, 'generate_awb', previous, awb_code=shipment.awb_code,
                                courier_name=shipment.courier_name)

        return self._run(order_id, 'generate_awb', body)

    def assign_courier(self, order_id, courier_id, quote: CourierQuote = None) -> TransitionResult:
        """
        Put the order on a specific courier. Before an AWB exists the AWB is requested
        for that courier; afterwards the provider re-assigns it and any pickup not yet
        executed is dropped.
        """
        def body(order, shipment):
            shipment = self._require(order, shipment)
            if not shipment.shipment_id:
                raise InvalidTransition(f"Order {order.pk} has no shipment yet", order_id=order.pk)
            if shipment.picked_up_at or shipment.state in (S.IN_TRANSIT, S.DELIVERED):
                raise InvalidTransition(f"Courier has already picked up order {order.pk}", order_id=order.pk)
            self._guard(shipment, PRE_PICKUP_STATES, 'assign_courier')

            if shipment.awb_code and str(shipment.courier_id) == str(courier_id):
                return self._result(shipment, 'assign_courier', shipment.state, status='noop',
                                    courier_id=shipment.courier_id, awb_code=shipment.awb_code)

            reassign = bool(shipment.awb_code)
            assignment = self._request_awb(shipment, courier_id, reassign=reassign)
            previous = shipment.state
            if reassign:
                logger.info(f"Order {order.pk}: courier re-assigned from {shipment.courier_name} to {courier_id}")
                shipment.pickup_date = None
                shipment.pickup_token = None
                shipment.label_url = None
            self._apply_assignment(shipment, assignment, quote)
            if not shipment.courier_id:
                shipment.courier_id = str(courier_id)
            shipment.state = S.COURIER_ASSIGNED
            self._commit(shipment, previous, 'assign_courier')
            return self._result(shipment, 'assign_courier', previous, courier_id=shipment.courier_id,
                                courier_name=shipment.courier_name, awb_code=shipment.awb_code,
                                reassigned=reassign)

        return self._run(order_id, 'assign_courier', body)

    # ------------------------------------------------------------------
    # Pickup and label
    # ------------------------------------------------------------------

    def _landed_pickup(self, shipment_id, wanted: date) -> Optional[PickupConfirmation]:
        details = self.gateway.get_shipment(shipment_id)
        if details.pickup_token and details.pickup_date == wanted:
            logger.warning(f"Shipment {shipment_id}: adopting pickup {details.pickup_token} from an unconfirmed earlier attempt")
            return PickupConfirmation(pickup_token=details.pickup_token, pickup_date=details.pickup_date)
        return None

    def schedule_pickup(self, order_id, pickup_date: date = None) -> TransitionResult:
        def body(order, shipment):
            shipment = self._require(order, shipment)
            if not shipment.awb_code:
                raise InvalidTransition(f"Order {order.pk} has no AWB yet", order_id=order.pk)
            self._guard(shipment, AWB_STATES, 'schedule_pickup')

            wanted = pickup_date or self._today()
            if wanted < self._today():
                raise ValidationError(f"Pickup date {wanted} is in the past", order_id=order.pk)
            if shipment.pickup_token and shipment.pickup_date == wanted:
                return self._result(shipment, 'schedule_pickup', shipment.state, status='noop',
                                    pickup_token=shipment.pickup_token, pickup_date=wanted.isoformat())

            rescheduled = bool(shipment.pickup_token)
            confirmation = None
            if self._unconfirmed(shipment, 'schedule_pickup'):
                confirmation = self._landed_pickup(shipment.shipment_id, wanted)
            if confirmation is None:
                confirmation = self.gateway.schedule_pickup(shipment.shipment_id, wanted)
            previous = shipment.state
            shipment.pickup_token = confirmation.pickup_token
            shipment.pickup_date = confirmation.pickup_date or wanted
            shipment.state = S.PICKUP_SCHEDULED
            self._commit(shipment, previous, 'schedule_pickup')
            return self._result(shipment, 'schedule_pickup', previous, pickup_token=shipment.pickup_token,
                                pickup_date=shipment.pickup_date.isoformat(), rescheduled=rescheduled)

        return self._run(order_id, 'schedule_pickup', body)

    def fetch_label(self, order_id) -> TransitionResult:
        def body(order, shipment):
            shipment = self._require(order, shipment)
            if not shipment.awb_code:
                raise InvalidTransition(f"Order {order.pk} has no AWB yet", order_id=order.pk)
            if shipment.is_terminal:
                raise InvalidTransition(f"Order {order.pk} is {shipment.state}", order_id=order.pk)
            if shipment.label_url:
                return self._result(shipment, 'fetch_label', shipment.state, status='noop',
                                    label_url=shipment.label_url)
            shipment.label_url = self.gateway.get_label(shipment.shipment_id)
            self._commit(shipment, shipment.state, 'fetch_label')
            return self._result(shipment, 'fetch_label', shipment.state, label_url=shipment.label_url)

        return self._run(order_id, 'fetch_label', body)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, order_id, reason: str = '') -> TransitionResult:
        """
        Cancel locally and at the provider. A failed remote cancellation does not
        block the local one; it is recorded as a reconciliation issue instead.
        """
        def body(order, shipment):
            shipment = self._require(order, shipment)
            if shipment.state == S.CANCELLED:
                return self._result(shipment, 'cancel', shipment.state, status='noop')
            if shipment.is_terminal:
                raise InvalidTransition(f"Order {order.pk} is already {shipment.state}", order_id=order.pk)

            issues = []
            if shipment.provider_order_id:
                try:
                    self.gateway.cancel_shipment(shipment.provider_order_id, shipment.awb_code)
                except ProviderError as e:
                    issues.append(self._reconcile(
                        order.pk, 'cancel_failed',
                        f"Remote cancellation of provider order {shipment.provider_order_id} failed "
                        f"({e.kind}: {e.message}); it may still be active at the provider",
                    ))

            previous = shipment.state
            shipment.state = S.CANCELLED
            shipment.cancelled_at = self.clock.now()
            order.order_status = 'cancelled'
            self._commit(shipment, previous, 'cancel', order=order)
            logger.info(f"Order {order.pk} cancelled: {reason or 'no reason given'}")
            return self._result(shipment, 'cancel', previous, issues=issues, reason=reason)

        return self._run(order_id, 'cancel', body)

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def apply_tracking(self, order_id, updates: Iterable, track_url: str = None) -> TransitionResult:
        """Apply provider tracking updates (webhook or poll). Only updates newer than the last sync count."""
        def body(order, shipment):
            shipment = self._require(order, shipment)
            return self._apply_tracking(order, shipment, list(updates), track_url, 'apply_tracking')

        return self._run(order_id, 'apply_tracking', body)

    def refresh_tracking(self, order_id) -> TransitionResult:
        def body(order, shipment):
            shipment = self._require(order, shipment)
            if not shipment.awb_code:
                raise InvalidTransition(f"Order {order.pk} has no AWB to track", order_id=order.pk)
            if shipment.state in CLOSED_STATES:
                return self._result(shipment, 'refresh_tracking', shipment.state, status='noop', applied=0)
            snapshot = self.gateway.track_by_awb(shipment.awb_code)
            return self._apply_tracking(order, shipment, snapshot.events, snapshot.track_url, 'refresh_tracking')

        return self._run(order_id, 'refresh_tracking', body)

    def _apply_tracking(self, order, shipment: Shipment, updates: List, track_url, operation) -> TransitionResult:
        if not shipment.awb_code:
            raise InvalidTransition(f"Order {order.pk} has no AWB to track", order_id=order.pk)
        if shipment.state in CLOSED_STATES:
            return self._result(shipment, operation, shipment.state, status='noop', applied=0)

        last_sync = shipment.last_tracking_sync_at
        fresh = sorted(
            (u for u in updates if last_sync is None or u.occurred_at > last_sync),
            key=lambda u: u.occurred_at,
        )
        if len(fresh) < len(updates):
            logger.debug(f"Order {order.pk}: ignored {len(updates) - len(fresh)} tracking update(s) not newer than {last_sync}")
        if not fresh:
            return self._result(shipment, operation, shipment.state, status='noop', applied=0)

        previous = shipment.state
        issues = []
        order_changed = False

        for update in fresh:
            if shipment.state in CLOSED_STATES:
                continue
            outcome = classify_status(update.status_text)
            if outcome in ('picked_up', 'in_transit'):
                if not shipment.picked_up_at:
                    shipment.picked_up_at = update.occurred_at
                if shipment.state != S.IN_TRANSIT:
                    shipment.state = S.IN_TRANSIT
                    order.order_status, order_changed = 'shipped', True
            elif outcome == 'delivered':
                shipment.state = S.DELIVERED
                shipment.delivered_at = update.occurred_at
                order.order_status, order_changed = 'delivered', True
            elif outcome == 'failed':
                shipment.failed_stage = shipment.state
                shipment.state = S.FAILED
                logger.warning(f"Order {order.pk}: provider reports {update.status_text}, failed at {shipment.failed_stage}")
            elif outcome == 'cancelled':
                issues.append(self._reconcile(
                    order.pk, 'remote_cancelled',
                    f"Provider reports AWB {shipment.awb_code} cancelled but the order is {shipment.state} locally",
                ))

        shipment.tracking_status = fresh[-1].status_text[:100]
        shipment.last_tracking_sync_at = fresh[-1].occurred_at
        if track_url:
            shipment.tracking_url = track_url
        self._commit(shipment, previous, operation, order=order if order_changed else None)
        # Only once the sync point is stored, so a refused write can replay the same events
        self.store.add_tracking_events(shipment, fresh)
        return self._result(shipment, operation, previous, issues=issues, applied=len(fresh),
                            tracking_status=shipment.tracking_status)

    # ------------------------------------------------------------------
    # Returns
    # ------------------------------------------------------------------

    def request_return(self, order_id, reason: str) -> TransitionResult:
        """Open a return on a delivered order, within the return window."""
        def body(order, shipment):
            shipment = self._require(order, shipment)
            if shipment.return_state:
                if shipment.return_state == ReturnState.REQUESTED:
                    return self._result(shipment, 'request_return', shipment.state, status='noop',
                                        return_state=shipment.return_state)
                raise InvalidTransition(
                    f"Order {order.pk} already has a return ({shipment.return_state})", order_id=order.pk,
                )
            self._guard(shipment, (S.DELIVERED,), 'request_return')
            if not (reason or '').strip():
                raise ValidationError("A return needs a reason", order_id=order.pk)
            now = self.clock.now()
            if shipment.delivered_at and now > shipment.delivered_at + timedelta(days=self.return_window_days):
                raise ValidationError(
                    f"Return window of {self.return_window_days} days closed for order {order.pk}",
                    order_id=order.pk,
                )

            shipment.return_state = ReturnState.REQUESTED
            shipment.return_reason = reason.strip()
            shipment.return_requested_at = now
            self._commit(shipment, shipment.state, 'request_return')
            logger.info(f"Order {order.pk}: return requested ({shipment.return_reason})")
            return self._result(shipment, 'request_return', shipment.state, return_state=shipment.return_state)

        return self._run(order_id, 'request_return', body)

    def review_return(self, order_id, approve: bool, note: str = '') -> TransitionResult:
        def body(order, shipment):
            shipment = self._require(order, shipment)
            target = ReturnState.APPROVED if approve else ReturnState.REJECTED
            if shipment.return_state == target:
                return self._result(shipment, 'review_return', shipment.state, status='noop',
                                    return_state=shipment.return_state)
            if shipment.return_state != ReturnState.REQUESTED:
                raise InvalidTransition(
                    f"Order {order.pk} has no return awaiting review (return is {shipment.return_state or 'none'})",
                    order_id=order.pk,
                )
            shipment.return_state = target
            shipment.return_review_note = note
            self._commit(shipment, shipment.state, 'review_return')
            logger.info(f"Order {order.pk}: return {target}")
            return self._result(shipment, 'review_return', shipment.state, return_state=shipment.return_state)

        return self._run(order_id, 'review_return', body)

    def _return_destination(self, shipment: Shipment):
        name = shipment.pickup_location or self.default_pickup_location
        for location in self.gateway.list_pickup_locations():
            if location.name == name:
                return location
        raise PermanentProviderError(
            f"Pickup location '{name}' is not configured at the provider, cannot route the return",
            order_id=shipment.order_id,
        )

    def create_return_shipment(self, order_id) -> TransitionResult:
        """
        Register the reverse order back to the pickup location the parcel left
        from, then request its AWB. A failed AWB request keeps the registration.
        """
        def body(order, shipment):
            shipment = self._require(order, shipment)
            if shipment.return_state == ReturnState.AWB_GENERATED:
                return self._result(shipment, 'create_return_shipment', shipment.state, status='noop',
                                    return_awb_code=shipment.return_awb_code)
            if shipment.return_state not in (ReturnState.APPROVED, ReturnState.REGISTERED):
                raise InvalidTransition(
                    f"Order {order.pk} has no approved return (return is {shipment.return_state or 'none'})",
                    order_id=order.pk,
                )

            if shipment.return_state == ReturnState.APPROVED:
                self._register_return(order, shipment)

            assignment = self._request_awb(shipment, is_return=True)
            shipment.return_awb_code = assignment.awb_code
            shipment.return_courier_name = assignment.courier_name
            shipment.return_tracking_url = assignment.tracking_url
            shipment.return_state = ReturnState.AWB_GENERATED
            self._commit(shipment, shipment.state, 'create_return_shipment')
            logger.info(f"Order {order.pk}: return AWB {shipment.return_awb_code} via {shipment.return_courier_name}")
            return self._result(shipment, 'create_return_shipment', shipment.state,
                                rma_number=shipment.rma_number, return_awb_code=shipment.return_awb_code,
                                return_courier_name=shipment.return_courier_name)

        return self._run(order_id, 'create_return_shipment', body)

    def _register_return(self, order, shipment: Shipment):
        rma = shipment.rma_number
        provider_order = None
        if self._unconfirmed(shipment, 'create_return_shipment'):
            provider_order = self.gateway.find_order(rma)
        if provider_order is None:
            payload = build_return_payload(order, rma, self._return_destination(shipment), shipment.return_reason)
            try:
                provider_order = self.gateway.create_return_order(payload)
            except DuplicateOrder:
                logger.info(f"Return {rma} already registered at provider, fetching it")
                provider_order = self.gateway.find_order(rma)
                if provider_order is None:
                    raise PermanentProviderError(
                        f"Provider reports return {rma} as a duplicate but cannot find it", order_id=order.pk,
                    )
        if not provider_order.shipment_id:
            raise PermanentProviderError(
                f"Return {rma} registered as provider order {provider_order.order_id} without a shipment",
                order_id=order.pk,
            )
        shipment.return_provider_order_id = provider_order.order_id
        shipment.return_shipment_id = provider_order.shipment_id
        shipment.return_state = ReturnState.REGISTERED
        self._commit(shipment, shipment.state, 'create_return_shipment')
