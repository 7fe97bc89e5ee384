from datetime import date, datetime
from decimal import Decimal

import requests
from django.test import SimpleTestCase
from django.utils import timezone

from shipments.clock import FakeClock
from shipments.exceptions import (
    DuplicateOrder,
    InsufficientBalance,
    PermanentProviderError,
    TransientProviderError,
)
from shipments.gateway import (
    LogisticsGateway,
    PickupLocation,
    build_order_payload,
    build_return_payload,
    parse_provider_timestamp,
)
from shipments.models import ShipmentState
from shipments.retry import RetryPolicy
from shipments.state_machine import OrderShipmentStateMachine
from shipments.stores import InMemoryShipmentStore

from .fakes import T0, make_order

BASE = 'https://api.logistics.test/v1/external'


class FakeResponse:

    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.payload = payload

    def json(self):
        if self.payload is None:
            raise ValueError('No JSON object could be decoded')
        return self.payload


class FakeSession:
    """
    Answers login with a fresh token each time and everything else from
    ``routes[(method, path)]``, a list consumed front to back (the last entry repeats).
    Exceptions in the list are raised.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []
        self.logins = 0

    def add(self, method, path, *responses):
        self.routes.setdefault((method, path), []).extend(responses)

    def sent(self, method, path):
        return [r for r in self.requests if r['method'] == method and r['path'] == path]

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        path = url[len(BASE):]
        self.requests.append({'method': method, 'path': path, 'headers': headers or {}, **kwargs})
        if path == '/auth/login':
            self.logins += 1
            return FakeResponse(200, {'token': f'tok-{self.logins}'})
        queue = self.routes.get((method, path))
        if not queue:
            return FakeResponse(404, {'message': f'No route for {method} {path}', 'status_code': 404})
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class GatewayTestCase(SimpleTestCase):

    def setUp(self):
        self.clock = FakeClock(T0)
        self.session = FakeSession()
        self.gateway = LogisticsGateway(
            BASE, 'ops@example.com', 'secret', token_ttl=100,
            retry_policy=RetryPolicy(attempts=3, sleep=lambda seconds: None),
            session=self.session, clock=self.clock,
        )


class AuthenticationTests(GatewayTestCase):

    def setUp(self):
        super().setUp()
        self.session.add('GET', '/account/details/wallet-balance',
                         FakeResponse(200, {'data': {'balance_amount': '1520.75'}}))

    def test_token_is_reused_until_expiry(self):
        self.assertEqual(self.gateway.get_wallet_balance(), Decimal('1520.75'))
        self.gateway.get_wallet_balance()
        self.assertEqual(self.session.logins, 1)
        self.assertEqual(self.session.requests[-1]['headers']['Authorization'], 'Bearer tok-1')

        self.clock.advance(100)
        self.gateway.get_wallet_balance()
        self.assertEqual(self.session.logins, 2)
        self.assertEqual(self.session.requests[-1]['headers']['Authorization'], 'Bearer tok-2')

    def test_rejected_token_triggers_one_reauth(self):
        self.session.routes.clear()
        self.session.add('GET', '/account/details/wallet-balance',
                         FakeResponse(401, {'message': 'Token expired'}),
                         FakeResponse(200, {'data': {'balance_amount': 42}}))

        self.assertEqual(self.gateway.get_wallet_balance(), Decimal('42'))
        self.assertEqual(self.session.logins, 2)

    def test_missing_credentials(self):
        gateway = LogisticsGateway(BASE, '', '', session=self.session,
                                   retry_policy=RetryPolicy(attempts=1, sleep=lambda s: None))
        with self.assertRaises(PermanentProviderError):
            gateway.get_wallet_balance()
        self.assertEqual(self.session.requests, [])


class ClassificationTests(GatewayTestCase):

    def test_server_error_is_retried(self):
        self.session.add('GET', '/account/details/wallet-balance',
                         FakeResponse(502, None),
                         FakeResponse(200, {'data': {'balance_amount': '10'}}))
        self.assertEqual(self.gateway.get_wallet_balance(), Decimal('10'))
        self.assertEqual(len(self.session.sent('GET', '/account/details/wallet-balance')), 2)

    def test_persistent_timeouts_give_up(self):
        self.session.add('GET', '/courier/track/awb/AWB1', requests.exceptions.ReadTimeout('read timed out'))
        with self.assertRaises(TransientProviderError) as ctx:
            self.gateway.track_by_awb('AWB1')
        self.assertEqual(ctx.exception.details['attempts'], 3)

    def test_validation_message_is_surfaced_verbatim(self):
        self.session.add('POST', '/orders/create/adhoc', FakeResponse(422, {
            'message': 'Oops! Invalid Data.',
            'errors': {'billing_pincode': ['The billing pincode must be 6 digits.']},
        }))
        with self.assertRaises(PermanentProviderError) as ctx:
            self.gateway.create_order({'order_id': 'ORD1'})
        self.assertIn('billing_pincode: The billing pincode must be 6 digits.', ctx.exception.message)
        self.assertEqual(ctx.exception.status_code, 422)
        self.assertEqual(len(self.session.sent('POST', '/orders/create/adhoc')), 1)

    def test_duplicate_order(self):
        self.session.add('POST', '/orders/create/adhoc',
                         FakeResponse(422, {'message': 'Order Id ORD1 already exists'}))
        with self.assertRaises(DuplicateOrder):
            self.gateway.create_order({'order_id': 'ORD1'})

    def test_insufficient_balance_in_envelope(self):
        self.session.add('POST', '/courier/assign/awb', FakeResponse(200, {
            'status_code': 350, 'message': 'Insufficient balance, please recharge your wallet',
        }))
        with self.assertRaises(InsufficientBalance) as ctx:
            self.gateway.generate_awb('SH1')
        self.assertTrue(ctx.exception.message.startswith('insufficient balance'))
        self.assertEqual(len(self.session.sent('POST', '/courier/assign/awb')), 1)

    def test_unparseable_body_is_transient(self):
        self.session.add('GET', '/settings/company/pickup', FakeResponse(200, None))
        with self.assertRaises(TransientProviderError):
            self.gateway.list_pickup_locations()

    def test_client_error_without_json_is_permanent(self):
        self.session.add('GET', '/orders/show/1', FakeResponse(403, None))
        with self.assertRaises(PermanentProviderError) as ctx:
            self.gateway.get_order('1')
        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(len(self.session.sent('GET', '/orders/show/1')), 1)


class OrderAndShipmentTests(GatewayTestCase):

    def test_create_order(self):
        self.session.add('POST', '/orders/create/adhoc',
                         FakeResponse(200, {'order_id': 9001, 'shipment_id': 0, 'status': 'NEW'}))
        order = self.gateway.create_order({'order_id': 'ORD7'})
        self.assertEqual(order.order_id, '9001')
        self.assertEqual(order.channel_order_id, 'ORD7')
        self.assertIsNone(order.shipment_id)

    def test_lost_write_is_looked_up_before_repeating(self):
        self.session.add('POST', '/shipments/create', requests.exceptions.ReadTimeout('read timed out'))
        self.session.add('GET', '/orders/show/9001', FakeResponse(200, {
            'data': {'id': 9001, 'channel_order_id': 'ORD7', 'shipments': [{'id': 5501}]},
        }))

        shipment_id = self.gateway.create_shipment('9001', 'Primary', {'weight': 0.5})

        self.assertEqual(shipment_id, '5501')
        self.assertEqual(len(self.session.sent('POST', '/shipments/create')), 1)

    def test_lost_write_not_applied_is_repeated(self):
        self.session.add('POST', '/shipments/create',
                         requests.exceptions.ConnectionError('connection reset'),
                         FakeResponse(200, {'shipment_id': 5502}))
        self.session.add('GET', '/orders/show/9001', FakeResponse(200, {'data': {'id': 9001, 'shipments': []}}))

        self.assertEqual(self.gateway.create_shipment('9001', 'Primary', {'weight': 0.5}), '5502')
        self.assertEqual(len(self.session.sent('POST', '/shipments/create')), 2)

    def test_unconfirmed_shipment_is_adopted_by_the_next_transition(self):
        self.session.add('POST', '/orders/create/adhoc', FakeResponse(200, {'order_id': 9001}))
        self.session.add('POST', '/shipments/create', requests.exceptions.ReadTimeout('read timed out'))
        self.session.add('GET', '/orders/show/9001',
                         FakeResponse(200, {'data': {'id': 9001, 'shipments': []}}),
                         FakeResponse(200, {'data': {'id': 9001, 'shipments': []}}),
                         FakeResponse(200, {'data': {'id': 9001, 'shipments': [{'id': 5555}]}}))
        store = InMemoryShipmentStore()
        store.add_order(make_order(7, created_at=T0))
        machine = OrderShipmentStateMachine(self.gateway, store, clock=self.clock,
                                            default_pickup_location='Primary', return_window_days=30)
        machine.accept(7)

        first = machine.create_shipment(7)
        self.assertEqual(first.error_kind, 'ambiguous')
        self.assertEqual(first.state, ShipmentState.REGISTERED)

        second = machine.create_shipment(7)
        self.assertTrue(second.ok, second.message)
        self.assertTrue(second.data['adopted'])
        self.assertEqual(store.get_shipment(7).shipment_id, '5555')
        self.assertEqual(len(self.session.sent('POST', '/shipments/create')), 3)
        self.assertEqual(len(self.session.sent('POST', '/orders/create/adhoc')), 1)

    def test_find_order_by_channel_id(self):
        self.session.add('GET', '/orders', FakeResponse(200, {'data': [
            {'id': 1, 'channel_order_id': 'ORD10'},
            {'id': 2, 'channel_order_id': 'ORD1'},
        ]}))
        self.assertEqual(self.gateway.find_order('ORD1').order_id, '2')
        self.assertIsNone(self.gateway.find_order('ORD99'))
        self.assertEqual(self.session.sent('GET', '/orders')[0]['params'], {'search': 'ORD1'})

    def test_create_return_order(self):
        self.session.add('POST', '/orders/create/return',
                         FakeResponse(200, {'order_id': 7001, 'shipment_id': 7002, 'status': 'RETURN PENDING'}))
        result = self.gateway.create_return_order({'order_id': 'RET-7'})
        self.assertEqual(result.order_id, '7001')
        self.assertEqual(result.shipment_id, '7002')
        self.assertEqual(result.channel_order_id, 'RET-7')

    def test_lost_return_registration_is_found_by_rma(self):
        self.session.add('POST', '/orders/create/return', requests.exceptions.ReadTimeout('read timed out'))
        self.session.add('GET', '/orders', FakeResponse(200, {'data': [
            {'id': 7001, 'channel_order_id': 'RET-7', 'shipments': [{'id': 7002}]},
        ]}))
        result = self.gateway.create_return_order({'order_id': 'RET-7'})
        self.assertEqual(result.shipment_id, '7002')
        self.assertEqual(len(self.session.sent('POST', '/orders/create/return')), 1)


class AwbAndRateTests(GatewayTestCase):

    def test_awb_assignment(self):
        self.session.add('POST', '/courier/assign/awb', FakeResponse(200, {
            'awb_assign_status': 1,
            'response': {'data': {'awb_code': '141123221084922', 'courier_company_id': 12,
                                  'courier_name': 'Delhivery Surface', 'freight_charges': '62.50'}},
        }))
        assignment = self.gateway.generate_awb('SH1', courier_id='12')
        self.assertEqual(assignment.awb_code, '141123221084922')
        self.assertEqual(assignment.courier_id, '12')
        self.assertEqual(assignment.freight_charge, Decimal('62.50'))
        self.assertEqual(self.session.sent('POST', '/courier/assign/awb')[0]['json'],
                         {'shipment_id': 'SH1', 'courier_id': '12'})

    def test_awb_refusal(self):
        self.session.add('POST', '/courier/assign/awb', FakeResponse(200, {
            'awb_assign_status': 0,
            'response': {'data': {'awb_assign_error': 'Selected courier is not serviceable'}},
        }))
        with self.assertRaises(PermanentProviderError) as ctx:
            self.gateway.generate_awb('SH1')
        self.assertEqual(ctx.exception.message, 'Selected courier is not serviceable')

    def test_reassign_flag(self):
        self.session.add('POST', '/courier/assign/awb', FakeResponse(200, {
            'awb_assign_status': 1, 'response': {'data': {'awb_code': 'A2', 'courier_company_id': 51}},
        }))
        self.gateway.generate_awb('SH1', courier_id='51', reassign=True)
        self.assertEqual(self.session.sent('POST', '/courier/assign/awb')[0]['json']['status'], 'reassign')

    def test_return_flag(self):
        self.session.add('POST', '/courier/assign/awb', FakeResponse(200, {
            'awb_assign_status': 1, 'response': {'data': {'awb_code': 'R1', 'courier_name': 'Xpressbees'}},
        }))
        self.assertEqual(self.gateway.generate_awb('7002', is_return=True).awb_code, 'R1')
        self.assertEqual(self.session.sent('POST', '/courier/assign/awb')[0]['json'],
                         {'shipment_id': '7002', 'is_return': 1})

    def test_rates(self):
        self.session.add('GET', '/courier/serviceability/', FakeResponse(200, {'status': 200, 'data': {
            'recommended_courier_company_id': 12,
            'available_courier_companies': [
                {'courier_company_id': 12, 'courier_name': 'Delhivery Surface', 'freight_charge': 62,
                 'cod_charges': 0, 'estimated_delivery_days': '4'},
                {'courier_company_id': 51, 'courier_name': 'Xpressbees', 'freight_charge': 0, 'rate': 71.5,
                 'estimated_delivery_days': 3, 'blocked': 1},
            ],
        }}))

        quotes = self.gateway.get_rates('110001', '560001', 0.5)

        self.assertEqual([q.courier_id for q in quotes], ['12', '51'])
        self.assertTrue(quotes[0].recommended)
        self.assertEqual(quotes[0].estimated_days, 4)
        self.assertEqual(quotes[1].freight_charge, Decimal('71.5'))
        self.assertFalse(quotes[1].serviceable)
        params = self.session.sent('GET', '/courier/serviceability/')[0]['params']
        self.assertEqual(params['weight'], 0.5)
        self.assertEqual(params['cod'], 0)

    def test_unserviceable_route_is_empty(self):
        self.session.add('GET', '/courier/serviceability/',
                         FakeResponse(404, {'message': 'Delivery postcode not serviceable', 'status': 404}))
        self.assertEqual(self.gateway.get_rates('110001', '999999', 1), [])


class PickupTrackingTests(GatewayTestCase):

    def test_schedule_pickup(self):
        self.session.add('POST', '/courier/generate/pickup', FakeResponse(200, {
            'pickup_status': 1,
            'response': {'pickup_token_number': 'Reference No: 19434', 'pickup_scheduled_date': '2026-03-03 10:00:00'},
        }))
        confirmation = self.gateway.schedule_pickup('SH1', date(2026, 3, 3))
        self.assertEqual(confirmation.pickup_token, 'Reference No: 19434')
        self.assertEqual(confirmation.pickup_date, date(2026, 3, 3))

    def test_already_scheduled_pickup_is_read_back(self):
        self.session.add('POST', '/courier/generate/pickup',
                         FakeResponse(400, {'message': 'Already in Pickup Queue.'}))
        self.session.add('GET', '/shipments/SH1', FakeResponse(200, {'data': {
            'id': 'SH1', 'awb': 'AWB1', 'pickup_token_number': 'PK77', 'pickup_scheduled_date': '2026-03-03',
        }}))
        confirmation = self.gateway.schedule_pickup('SH1', date(2026, 3, 3))
        self.assertEqual(confirmation.pickup_token, 'PK77')

    def test_cancel_uses_awb_when_known(self):
        self.session.add('POST', '/orders/cancel/shipment/awbs', FakeResponse(200, {'message': 'Cancelled'}))
        self.gateway.cancel_shipment('9001', 'AWB1')
        self.assertEqual(self.session.sent('POST', '/orders/cancel/shipment/awbs')[0]['json'], {'awbs': ['AWB1']})

    def test_tracking_is_parsed_and_sorted(self):
        self.session.add('GET', '/courier/track/awb/AWB1', FakeResponse(200, {'tracking_data': {
            'track_status': 1,
            'shipment_track': [{'current_status': 'IN TRANSIT'}],
            'track_url': 'https://track.example.com/AWB1',
            'shipment_track_activities': [
                {'date': '2026-03-03 18:10:00', 'activity': 'Reached hub', 'sr-status-label': 'IN TRANSIT',
                 'location': 'Pune_Hub'},
                {'date': 'yesterday', 'activity': 'Garbled'},
                {'date': '2026-03-03 10:00:00', 'activity': 'Shipment picked', 'sr-status-label': 'PICKED UP'},
                {'date': '2026-03-02 20:00:00', 'activity': 'Manifested', 'sr-status-label': 'NA'},
            ],
        }}))

        snapshot = self.gateway.track_by_awb('AWB1')

        self.assertEqual([e.status_text for e in snapshot.events], ['Manifested', 'PICKED UP', 'IN TRANSIT'])
        self.assertEqual(snapshot.events[0].occurred_at, timezone.make_aware(datetime(2026, 3, 2, 20, 0)))
        self.assertEqual(snapshot.events[-1].location, 'Pune_Hub')
        self.assertEqual(snapshot.current_status, 'IN TRANSIT')
        self.assertEqual(snapshot.track_url, 'https://track.example.com/AWB1')


class PayloadTests(SimpleTestCase):

    def test_order_payload(self):
        order = make_order(7, created_at=T0, payment_method='cod')
        payload = build_order_payload(order, 'Primary')
        self.assertEqual(payload['order_id'], 'ORD7')
        self.assertEqual(payload['billing_customer_name'], 'Asha')
        self.assertEqual(payload['billing_last_name'], 'Verma')
        self.assertEqual(payload['payment_method'], 'COD')
        self.assertEqual(payload['order_items'][0]['sku'], 'LS-01')
        self.assertEqual(payload['weight'], 0.5)

    def test_return_payload_goes_back_to_pickup_location(self):
        order = make_order(7, created_at=T0)
        warehouse = PickupLocation(name='Primary', pincode='110001', city='New Delhi', address='Okhla Phase 1',
                                   state='Delhi', phone='9999999999', contact_name='Dispatch desk')
        payload = build_return_payload(order, 'RET-7', warehouse, 'Wrong size')
        self.assertEqual(payload['order_id'], 'RET-7')
        self.assertEqual(payload['pickup_customer_name'], 'Asha')
        self.assertEqual(payload['pickup_pincode'], '560001')
        self.assertEqual(payload['shipping_customer_name'], 'Dispatch desk')
        self.assertEqual(payload['shipping_pincode'], '110001')
        self.assertEqual(payload['return_reason'], 'Wrong size')
        self.assertEqual(payload['order_items'][0]['sku'], 'LS-01')

    def test_incomplete_snapshot_fails_closed(self):
        order = make_order(7, shipping_info={'full_name': 'Asha Verma', 'city': 'Bengaluru'})
        with self.assertRaises(PermanentProviderError) as ctx:
            build_order_payload(order, 'Primary')
        self.assertIn('pincode', ctx.exception.details['missing'])

    def test_timestamps(self):
        aware = parse_provider_timestamp('2026-03-03T04:30:00Z')
        self.assertEqual(aware, datetime(2026, 3, 3, 4, 30, tzinfo=aware.tzinfo))
        self.assertEqual(aware.utcoffset().total_seconds(), 0)
        self.assertEqual(parse_provider_timestamp('03 03 2026 10:00:00'),
                         timezone.make_aware(datetime(2026, 3, 3, 10, 0)))
        self.assertIsNone(parse_provider_timestamp('soon'))
        self.assertIsNone(parse_provider_timestamp(''))
