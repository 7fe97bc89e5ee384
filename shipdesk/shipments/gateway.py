import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional

import requests
from django.conf import settings
from django.utils import timezone

from .clock import SystemClock
from .exceptions import (
    AmbiguousProviderError,
    DuplicateOrder,
    InsufficientBalance,
    PermanentProviderError,
    TransientProviderError,
)
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

INSUFFICIENT_BALANCE_CODE = 350


@dataclass
class ProviderOrder:
    order_id: str
    channel_order_id: str = ''
    shipment_id: Optional[str] = None
    status: str = ''


@dataclass
class ShipmentDetails:
    shipment_id: str
    order_id: Optional[str] = None
    awb_code: Optional[str] = None
    courier_id: Optional[str] = None
    courier_name: Optional[str] = None
    status: str = ''
    pickup_date: Optional[date] = None
    pickup_token: Optional[str] = None


@dataclass
class AwbAssignment:
    awb_code: str
    courier_id: Optional[str] = None
    courier_name: Optional[str] = None
    estimated_days: Optional[int] = None
    freight_charge: Optional[Decimal] = None
    tracking_url: Optional[str] = None


@dataclass
class CourierInfo:
    courier_id: str
    name: str
    active: bool = True


@dataclass
class CourierQuote:
    courier_id: str
    name: str
    freight_charge: Decimal
    cod_charge: Decimal = Decimal('0')
    estimated_days: Optional[int] = None
    is_surface: bool = False
    is_hyperlocal: bool = False
    serviceable: bool = True
    rating: Optional[float] = None
    recommended: bool = False


@dataclass
class PickupConfirmation:
    pickup_token: str
    pickup_date: Optional[date] = None
    status: str = ''


@dataclass
class PickupLocation:
    name: str
    pincode: str = ''
    city: str = ''
    address: str = ''
    state: str = ''
    phone: str = ''
    email: str = ''
    contact_name: str = ''


@dataclass
class TrackingUpdate:
    occurred_at: datetime
    status_text: str
    location: str = ''
    status_code: str = ''


@dataclass
class TrackingSnapshot:
    awb_code: str
    current_status: str = ''
    events: List[TrackingUpdate] = field(default_factory=list)
    track_url: Optional[str] = None
    etd: Optional[str] = None


TIMESTAMP_FORMATS = (
    '%Y-%m-%d %H:%M:%S',
    '%Y-%m-%d %H:%M',
    '%d %m %Y %H:%M:%S',
    '%d-%m-%Y %H:%M:%S',
)


def parse_provider_timestamp(value) -> Optional[datetime]:
    """
    Parse the timestamp formats the provider mixes across endpoints.
    Naive values are read in the project time zone. Returns None when unparseable.
    """
    if isinstance(value, datetime):
        parsed = value
    elif not value:
        return None
    else:
        text = str(value).strip()
        parsed = None
        for fmt in TIMESTAMP_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
        if parsed is None:
            try:
                parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
            except ValueError:
                logger.warning(f"Unparseable provider timestamp: {value!r}")
                return None
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed, timezone.get_current_timezone())
    return parsed


def _decimal(value, default=Decimal('0')) -> Decimal:
    try:
        return Decimal(str(value)) if value not in (None, '') else default
    except (InvalidOperation, ValueError):
        return default


def _int_or_none(value) -> Optional[int]:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _str_or_none(value) -> Optional[str]:
    return str(value) if value not in (None, '', 0) else None


def build_order_payload(order, pickup_location: str) -> Dict:
    """
    Provider registration payload for an accepted order.
    Fails closed when the customer snapshot is incomplete.
    """
    missing = order.missing_shipping_fields()
    if missing:
        raise PermanentProviderError(
            f"Order {order.pk} is missing shipping data: {', '.join(missing)}",
            order_id=order.pk,
            details={'missing': missing},
        )

    info = order.shipping_info
    full_name = str(info['full_name']).strip()
    name_parts = full_name.split(' ', 1)

    order_items = []
    for index, item in enumerate(order.items):
        order_items.append({
            'name': item.get('name') or f"Item {index + 1}",
            'sku': item.get('sku') or f"SKU{order.pk}-{index + 1}",
            'units': int(item.get('units') or item.get('quantity') or 1),
            'selling_price': float(item.get('selling_price') or item.get('price') or 0),
        })

    created = order.created_at or timezone.now()
    return {
        'order_id': order.channel_order_id,
        'order_date': created.strftime('%Y-%m-%d %H:%M'),
        'pickup_location': pickup_location,
        'payment_method': 'COD' if order.payment_method == 'cod' else 'Prepaid',
        'shipping_is_billing': True,
        'billing_customer_name': name_parts[0],
        'billing_last_name': name_parts[1] if len(name_parts) > 1 else '',
        'billing_address': info['address'],
        'billing_address_2': info.get('address_2', ''),
        'billing_city': info['city'],
        'billing_state': info['state'],
        'billing_country': info.get('country') or 'India',
        'billing_pincode': str(info['pincode']),
        'billing_email': info.get('email', ''),
        'billing_phone': str(info['phone']),
        'order_items': order_items,
        'sub_total': float(order.subtotal),
        'length': order.length,
        'breadth': order.breadth,
        'height': order.height,
        'weight': float(order.weight),
    }


def build_return_payload(order, rma_number: str, destination: PickupLocation, reason: str = '') -> Dict:
    """Reverse order: picked up from the customer, delivered to one of our pickup locations."""
    payload = build_order_payload(order, destination.name)
    info = order.shipping_info
    full_name = str(info['full_name']).strip()
    name_parts = full_name.split(' ', 1)
    return {
        'order_id': rma_number,
        'order_date': timezone.now().strftime('%Y-%m-%d'),
        'pickup_customer_name': name_parts[0],
        'pickup_last_name': name_parts[1] if len(name_parts) > 1 else '',
        'pickup_address': info['address'],
        'pickup_address_2': info.get('address_2', ''),
        'pickup_city': info['city'],
        'pickup_state': info['state'],
        'pickup_country': info.get('country') or 'India',
        'pickup_pincode': str(info['pincode']),
        'pickup_email': info.get('email', ''),
        'pickup_phone': str(info['phone']),
        'shipping_customer_name': destination.contact_name or destination.name,
        'shipping_address': destination.address,
        'shipping_city': destination.city,
        'shipping_state': destination.state,
        'shipping_country': 'India',
        'shipping_pincode': destination.pincode,
        'shipping_email': destination.email,
        'shipping_phone': destination.phone,
        'order_items': payload['order_items'],
        'payment_method': 'Prepaid',
        'sub_total': payload['sub_total'],
        'length': order.length,
        'breadth': order.breadth,
        'height': order.height,
        'weight': float(order.weight),
        'return_reason': reason,
    }


class LogisticsGateway:
    """
    Client for the logistics provider's HTTP API.

    Each public method returns a typed result or raises TransientProviderError /
    PermanentProviderError; provider response shapes never leave this class.
    """

    def __init__(self, base_url: str, email: str, password: str, timeout: float = 10,
                 token_ttl: int = 8 * 24 * 60 * 60, retry_policy: RetryPolicy = None,
                 session: requests.Session = None, clock=None):
        self.base_url = base_url.rstrip('/')
        self.email = email
        self.password = password
        self.timeout = timeout
        self.token_ttl = token_ttl
        self.retry = retry_policy or RetryPolicy()
        self.session = session or requests.Session()
        self.clock = clock or SystemClock()
        self._token = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    @classmethod
    def from_settings(cls, **overrides):
        options = {
            'base_url': settings.LOGISTICS_API_BASE,
            'email': settings.LOGISTICS_EMAIL,
            'password': settings.LOGISTICS_PASSWORD,
            'timeout': settings.LOGISTICS_HTTP_TIMEOUT,
            'token_ttl': settings.LOGISTICS_TOKEN_TTL,
            'retry_policy': RetryPolicy.from_settings(),
        }
        options.update(overrides)
        return cls(**options)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate(self) -> str:
        """Log in and cache the bearer token."""
        if not self.email or not self.password:
            raise PermanentProviderError("Logistics provider credentials are not configured")

        response = self._send('POST', '/auth/login', json={'email': self.email, 'password': self.password})
        if response.status_code != 200:
            data = self._json(response)
            message = self._message(data) or f"HTTP {response.status_code}"
            logger.error(f"Provider authentication failed: {message}")
            if response.status_code == 429 or response.status_code >= 500:
                raise TransientProviderError(f"Authentication failed: {message}", status_code=response.status_code)
            raise PermanentProviderError(f"Authentication failed: {message}", status_code=response.status_code)

        token = self._json(response).get('token')
        if not token:
            raise PermanentProviderError("Authentication response carried no token")

        self._token = token
        self._token_expires_at = self.clock.monotonic() + self.token_ttl
        logger.info("Provider authentication successful")
        return token

    def _bearer(self, refresh: bool = False) -> str:
        with self._token_lock:
            if refresh or not self._token or self.clock.monotonic() >= self._token_expires_at:
                self._token = None
                self.authenticate()
            return self._token

    # ------------------------------------------------------------------
    # Transport and normalization
    # ------------------------------------------------------------------

    def _send(self, method: str, path: str, write: bool = False, headers: Dict = None, **kwargs):
        url = f"{self.base_url}{path}"
        try:
            return self.session.request(method, url, headers=headers or {'Content-Type': 'application/json'},
                                        timeout=self.timeout, **kwargs)
        except requests.exceptions.ConnectTimeout as e:
            raise TransientProviderError(f"Connection to provider timed out: {e}")
        except (requests.exceptions.ReadTimeout, requests.exceptions.ConnectionError) as e:
            if write:
                raise AmbiguousProviderError(f"Provider connection lost during {method} {path}: {e}")
            raise TransientProviderError(f"Provider unreachable: {e}")
        except requests.exceptions.RequestException as e:
            raise TransientProviderError(f"Provider request failed: {e}")

    def _request(self, method: str, path: str, write: bool = False, **kwargs) -> Dict:
        """One HTTP exchange: auth, re-auth on 401, classification of the outcome."""
        token = self._bearer()
        headers = {'Content-Type': 'application/json', 'Authorization': f'Bearer {token}'}
        response = self._send(method, path, write=write, headers=headers, **kwargs)

        if response.status_code == 401:
            logger.info("Provider token rejected, re-authenticating")
            token = self._bearer(refresh=True)
            headers['Authorization'] = f'Bearer {token}'
            response = self._send(method, path, write=write, headers=headers, **kwargs)
            if response.status_code == 401:
                raise PermanentProviderError("Provider rejected a fresh token", status_code=401)

        logger.debug(f"Provider {method} {path} -> {response.status_code}")
        data = self._json(response)

        if response.status_code == 429:
            raise TransientProviderError("Provider rate limit hit", status_code=429)
        if response.status_code >= 500:
            raise TransientProviderError(
                self._message(data) or f"Provider server error {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise self._permanent(data or {}, response.status_code)
        if data is None:
            raise TransientProviderError(f"Unparseable provider response for {method} {path}",
                                         status_code=response.status_code)
        if not self._envelope_ok(data):
            raise self._permanent(data, response.status_code)
        return data

    @staticmethod
    def _json(response):
        try:
            data = response.json()
        except ValueError:
            return None
        return data if isinstance(data, dict) else {'data': data}

    @staticmethod
    def _envelope_ok(data: Dict) -> bool:
        if data.get('success') is False or data.get('status') == 'error':
            return False
        code = data.get('status_code')
        if isinstance(code, int) and (code == INSUFFICIENT_BALANCE_CODE or code >= 400):
            return False
        return True

    @staticmethod
    def _message(data) -> str:
        if not isinstance(data, dict):
            return ''
        message = data.get('message') or data.get('error') or ''
        errors = data.get('errors')
        if isinstance(errors, dict):
            details = '; '.join(
                f"{name}: {', '.join(map(str, issues)) if isinstance(issues, list) else issues}"
                for name, issues in errors.items()
            )
            message = f"{message} ({details})" if message else details
        return str(message)

    def _permanent(self, data: Dict, status_code: int) -> PermanentProviderError:
        message = self._message(data) or f"Provider rejected the request ({status_code})"
        lowered = message.lower()
        code = data.get('status_code') if isinstance(data, dict) else None
        if code == INSUFFICIENT_BALANCE_CODE or ('balance' in lowered and ('insufficient' in lowered or 'recharge' in lowered)):
            return InsufficientBalance(f"insufficient balance: {message}", status_code=status_code)
        if 'already exist' in lowered or 'duplicate' in lowered:
            return DuplicateOrder(message, status_code=status_code)
        return PermanentProviderError(message, status_code=status_code)

    @staticmethod
    def _payload(data: Dict):
        inner = data.get('data')
        return inner if isinstance(inner, (dict, list)) else data

    def _call(self, operation: str, method: str, path: str, write: bool = False,
              idempotent: bool = True, lookup: Optional[Callable] = None, **kwargs) -> Dict:
        return self.retry.run(
            lambda: self._request(method, path, write=write, **kwargs),
            operation=operation,
            idempotent=idempotent,
            lookup=lookup,
        )

    # ------------------------------------------------------------------
    # Orders and shipments
    # ------------------------------------------------------------------

    def create_order(self, payload: Dict) -> ProviderOrder:
        """Register an order with the provider. Raises DuplicateOrder if it already exists."""
        channel_order_id = payload['order_id']
        logger.info(f"Registering order {channel_order_id} with provider")
        result = self.retry.run(
            lambda: self._create_order_once(payload),
            operation=f"create_order {channel_order_id}",
            idempotent=False,
            lookup=lambda: self.find_order(channel_order_id),
        )
        logger.info(f"Provider order {result.order_id} registered for {channel_order_id}")
        return result

    def _create_order_once(self, payload: Dict) -> ProviderOrder:
        data = self._request('POST', '/orders/create/adhoc', write=True, json=payload)
        body = self._payload(data) if isinstance(data.get('data'), dict) else data
        order_id = body.get('order_id')
        if not order_id:
            raise PermanentProviderError(self._message(data) or "Order registration returned no order id")
        return ProviderOrder(
            order_id=str(order_id),
            channel_order_id=payload['order_id'],
            shipment_id=_str_or_none(body.get('shipment_id')),
            status=str(body.get('status') or ''),
        )

    def create_return_order(self, payload: Dict) -> ProviderOrder:
        """Register a reverse order. The provider creates its shipment in the same call."""
        rma_number = payload['order_id']
        logger.info(f"Registering return {rma_number} with provider")

        def once():
            data = self._request('POST', '/orders/create/return', write=True, json=payload)
            body = self._payload(data) if isinstance(data.get('data'), dict) else data
            if not body.get('order_id'):
                raise PermanentProviderError(self._message(data) or "Return registration returned no order id")
            return ProviderOrder(
                order_id=str(body['order_id']),
                channel_order_id=rma_number,
                shipment_id=_str_or_none(body.get('shipment_id')),
                status=str(body.get('status') or ''),
            )

        result = self.retry.run(once, operation=f"create_return_order {rma_number}", idempotent=False,
                                lookup=lambda: self.find_order(rma_number))
        logger.info(f"Return {rma_number} registered as provider order {result.order_id}")
        return result

    def find_order(self, channel_order_id: str) -> Optional[ProviderOrder]:
        data = self._call(f"find_order {channel_order_id}", 'GET', '/orders', params={'search': channel_order_id})
        orders = self._payload(data)
        if isinstance(orders, dict):
            orders = orders.get('orders') or orders.get('data') or []
        for entry in orders or []:
            if str(entry.get('channel_order_id')) == str(channel_order_id):
                return self._provider_order(entry)
        return None

    def get_order(self, provider_order_id: str) -> ProviderOrder:
        data = self._call(f"get_order {provider_order_id}", 'GET', f'/orders/show/{provider_order_id}')
        return self._provider_order(self._payload(data))

    def _provider_order(self, entry: Dict) -> ProviderOrder:
        shipments = entry.get('shipments')
        if isinstance(shipments, list):
            shipments = shipments[0] if shipments else {}
        shipment_id = (shipments or {}).get('id') or entry.get('shipment_id')
        return ProviderOrder(
            order_id=str(entry.get('id') or entry.get('order_id')),
            channel_order_id=str(entry.get('channel_order_id') or ''),
            shipment_id=_str_or_none(shipment_id),
            status=str(entry.get('status') or ''),
        )

    def create_shipment(self, provider_order_id: str, pickup_location: str, package: Dict) -> str:
        """Create the shipment for a registered order and return its shipment id."""
        def lookup():
            existing = self.get_order(provider_order_id)
            return existing.shipment_id

        def once():
            data = self._request('POST', '/shipments/create', write=True, json={
                'order_id': provider_order_id,
                'pickup_location': pickup_location,
                **package,
            })
            body = self._payload(data) if isinstance(data.get('data'), dict) else data
            shipment_id = body.get('shipment_id') or body.get('id')
            if not shipment_id:
                raise PermanentProviderError(self._message(data) or "Shipment creation returned no shipment id")
            return str(shipment_id)

        shipment_id = self.retry.run(once, operation=f"create_shipment {provider_order_id}",
                                     idempotent=False, lookup=lookup)
        logger.info(f"Shipment {shipment_id} created for provider order {provider_order_id}")
        return shipment_id

    def get_shipment(self, shipment_id: str) -> ShipmentDetails:
        data = self._call(f"get_shipment {shipment_id}", 'GET', f'/shipments/{shipment_id}')
        body = self._payload(data)
        return ShipmentDetails(
            shipment_id=str(body.get('id') or shipment_id),
            order_id=_str_or_none(body.get('order_id')),
            awb_code=_str_or_none(body.get('awb') or body.get('awb_code')),
            courier_id=_str_or_none(body.get('courier_id') or body.get('courier_company_id')),
            courier_name=_str_or_none(body.get('courier') or body.get('courier_name')),
            status=str(body.get('status') or ''),
            pickup_date=self._date(body.get('pickup_scheduled_date')),
            pickup_token=_str_or_none(body.get('pickup_token_number')),
        )

    # ------------------------------------------------------------------
    # AWB and couriers
    # ------------------------------------------------------------------

    def generate_awb(self, shipment_id: str, courier_id: Optional[str] = None,
                     reassign: bool = False, is_return: bool = False) -> AwbAssignment:
        """
        Request an AWB for a shipment. The provider picks the courier unless
        ``courier_id`` is given; ``reassign`` swaps the courier of an issued AWB.
        """
        body = {'shipment_id': shipment_id}
        if courier_id:
            body['courier_id'] = courier_id
        if reassign:
            body['status'] = 'reassign'
        if is_return:
            body['is_return'] = 1

        def lookup():
            details = self.get_shipment(shipment_id)
            if not details.awb_code:
                return None
            if courier_id and details.courier_id and str(details.courier_id) != str(courier_id):
                return None
            return AwbAssignment(awb_code=details.awb_code, courier_id=details.courier_id,
                                 courier_name=details.courier_name)

        def once():
            data = self._request('POST', '/courier/assign/awb', write=True, json=body)
            if data.get('awb_assign_status') == 0:
                error = (((data.get('response') or {}).get('data') or {}).get('awb_assign_error')
                         or self._message(data) or 'AWB assignment failed')
                raise self._permanent({'message': error, 'status_code': data.get('status_code')}, 200)
            awb = ((data.get('response') or {}).get('data') or {}) or self._payload(data)
            if not awb.get('awb_code'):
                raise PermanentProviderError(self._message(data) or "AWB response carried no AWB code")
            return AwbAssignment(
                awb_code=str(awb['awb_code']),
                courier_id=_str_or_none(awb.get('courier_company_id') or awb.get('courier_id')),
                courier_name=_str_or_none(awb.get('courier_name')),
                estimated_days=_int_or_none(awb.get('estimated_delivery_days')),
                freight_charge=_decimal(awb.get('freight_charges'), None),
                tracking_url=_str_or_none(awb.get('tracking_url')),
            )

        assignment = self.retry.run(once, operation=f"generate_awb {shipment_id}", idempotent=False, lookup=lookup)
        logger.info(f"AWB {assignment.awb_code} issued for shipment {shipment_id} via {assignment.courier_name}")
        return assignment

    def list_couriers(self) -> List[CourierInfo]:
        data = self._call("list_couriers", 'GET', '/courier/courierListWithCounts')
        couriers = data.get('courier_data') or self._payload(data)
        if isinstance(couriers, dict):
            couriers = couriers.get('courier_data') or []
        return [
            CourierInfo(courier_id=str(c.get('id')), name=c.get('name', ''), active=c.get('status', 1) in (1, '1', True))
            for c in couriers or []
        ]

    def get_rates(self, pickup_postcode: str, delivery_postcode: str, weight, cod: bool = False,
                  declared_value=None, length=None, breadth=None, height=None) -> List[CourierQuote]:
        """Quotes for a route. An unserviceable route is an empty list, not an error."""
        w = max(float(weight or 0), 0.1)
        params = {
            'pickup_postcode': str(pickup_postcode),
            'delivery_postcode': str(delivery_postcode),
            'weight': round(w, 2),
            'cod': 1 if cod else 0,
        }
        if declared_value is not None:
            params['declared_value'] = float(declared_value)
        for name, value in (('length', length), ('breadth', breadth), ('height', height)):
            if value:
                params[name] = int(value)

        try:
            data = self._call(f"get_rates {pickup_postcode}->{delivery_postcode}", 'GET',
                              '/courier/serviceability/', params=params)
        except PermanentProviderError as e:
            if e.status_code == 404:
                logger.warning(f"No courier serves {pickup_postcode}->{delivery_postcode}: {e}")
                return []
            raise

        body = self._payload(data)
        couriers = body.get('available_courier_companies') or [] if isinstance(body, dict) else []
        recommended = body.get('recommended_courier_company_id') if isinstance(body, dict) else None
        quotes = []
        for c in couriers:
            quotes.append(CourierQuote(
                courier_id=str(c.get('courier_company_id')),
                name=c.get('courier_name', ''),
                freight_charge=self._charge(c),
                cod_charge=_decimal(c.get('cod_charges')),
                estimated_days=_int_or_none(c.get('estimated_delivery_days')),
                is_surface=bool(c.get('is_surface')),
                is_hyperlocal=bool(c.get('is_hyperlocal')),
                serviceable=not c.get('blocked') and c.get('serviceable', True) is not False,
                rating=c.get('rating'),
                recommended=recommended is not None and c.get('courier_company_id') == recommended,
            ))
        logger.info(f"{len(quotes)} courier quote(s) for {pickup_postcode}->{delivery_postcode}")
        return quotes

    @staticmethod
    def _charge(c: Dict) -> Decimal:
        freight = _decimal(c.get('freight_charge'))
        if freight > 0:
            return freight
        rate = _decimal(c.get('rate'))
        if rate > 0:
            return rate
        return freight + _decimal(c.get('other_charges'))

    # ------------------------------------------------------------------
    # Pickup, labels, cancellation
    # ------------------------------------------------------------------

    def schedule_pickup(self, shipment_id: str, pickup_date: date) -> PickupConfirmation:
        wanted = pickup_date.isoformat()

        def lookup():
            details = self.get_shipment(shipment_id)
            if details.pickup_token and details.pickup_date == pickup_date:
                return PickupConfirmation(pickup_token=details.pickup_token, pickup_date=details.pickup_date,
                                          status='already scheduled')
            return None

        def once():
            try:
                data = self._request('POST', '/courier/generate/pickup', write=True,
                                     json={'shipment_id': [shipment_id], 'pickup_date': [wanted]})
            except PermanentProviderError as e:
                if 'already' in e.message.lower():
                    existing = lookup()
                    if existing:
                        return existing
                raise
            if data.get('pickup_status') == 0:
                raise PermanentProviderError(self._message(data) or "Pickup scheduling failed")
            body = data.get('response') or self._payload(data)
            token = body.get('pickup_token_number') or body.get('pickup_token')
            if not token:
                raise PermanentProviderError(self._message(data) or "Pickup response carried no token")
            return PickupConfirmation(
                pickup_token=str(token),
                pickup_date=self._date(body.get('pickup_scheduled_date')) or pickup_date,
                status=str(body.get('status') or ''),
            )

        confirmation = self.retry.run(once, operation=f"schedule_pickup {shipment_id}",
                                      idempotent=False, lookup=lookup)
        logger.info(f"Pickup {confirmation.pickup_token} scheduled for shipment {shipment_id} on {wanted}")
        return confirmation

    def get_label(self, shipment_id: str) -> str:
        data = self._call(f"get_label {shipment_id}", 'POST', '/courier/generate/label',
                          write=True, json={'shipment_id': [shipment_id]})
        label_url = data.get('label_url') or (self._payload(data) or {}).get('label_url')
        if data.get('label_created') == 0 or not label_url:
            raise PermanentProviderError(self._message(data) or "No label URL in response")
        return label_url

    def cancel_shipment(self, provider_order_id: str, awb_code: Optional[str] = None) -> None:
        """Cancel at the provider. Cancelling twice is harmless, so this is retried freely."""
        if awb_code:
            self._call(f"cancel awb {awb_code}", 'POST', '/orders/cancel/shipment/awbs',
                       write=True, json={'awbs': [awb_code]})
        else:
            self._call(f"cancel order {provider_order_id}", 'POST', '/orders/cancel',
                       write=True, json={'ids': [provider_order_id]})
        logger.info(f"Provider order {provider_order_id} cancelled")

    # ------------------------------------------------------------------
    # Tracking, wallet, pickup locations
    # ------------------------------------------------------------------

    def track_by_awb(self, awb_code: str) -> TrackingSnapshot:
        data = self._call(f"track {awb_code}", 'GET', f'/courier/track/awb/{awb_code}')
        tracking = data.get('tracking_data') or self._payload(data) or {}
        if isinstance(tracking, list):
            tracking = tracking[0] if tracking else {}

        events = []
        for activity in tracking.get('shipment_track_activities') or []:
            occurred_at = parse_provider_timestamp(activity.get('date'))
            if occurred_at is None:
                continue
            label = activity.get('sr-status-label')
            status_text = label if label and label != 'NA' else (activity.get('activity') or activity.get('status') or '')
            events.append(TrackingUpdate(
                occurred_at=occurred_at,
                status_text=str(status_text),
                location=str(activity.get('location') or ''),
                status_code=str(activity.get('sr-status') or activity.get('status') or ''),
            ))
        events.sort(key=lambda e: e.occurred_at)

        current = ''
        track = tracking.get('shipment_track')
        if isinstance(track, list) and track:
            current = track[0].get('current_status') or ''
        if not current and events:
            current = events[-1].status_text

        return TrackingSnapshot(
            awb_code=awb_code,
            current_status=str(current),
            events=events,
            track_url=_str_or_none(tracking.get('track_url')),
            etd=_str_or_none(tracking.get('etd')),
        )

    def get_wallet_balance(self) -> Decimal:
        data = self._call("wallet_balance", 'GET', '/account/details/wallet-balance')
        body = self._payload(data)
        amount = body.get('balance_amount', body.get('available_balance')) if isinstance(body, dict) else None
        if amount is None:
            raise PermanentProviderError("Wallet balance missing from provider response")
        return _decimal(amount)

    def list_pickup_locations(self) -> List[PickupLocation]:
        data = self._call("pickup_locations", 'GET', '/settings/company/pickup')
        body = self._payload(data)
        addresses = body.get('shipping_address') or [] if isinstance(body, dict) else body
        return [
            PickupLocation(
                name=a.get('pickup_location', ''),
                pincode=str(a.get('pin_code') or ''),
                city=a.get('city', ''),
                address=a.get('address', ''),
                state=a.get('state', ''),
                phone=str(a.get('phone') or ''),
                email=a.get('email', ''),
                contact_name=a.get('name', ''),
            )
            for a in addresses
        ]

    @staticmethod
    def _date(value) -> Optional[date]:
        parsed = parse_provider_timestamp(value) if value else None
        if parsed is None and value:
            try:
                return date.fromisoformat(str(value)[:10])
            except ValueError:
                return None
        return parsed.date() if parsed else None
