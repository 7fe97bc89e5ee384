import json
from datetime import timedelta
from decimal import Decimal
from unittest import mock

from django.apps import apps
from django.contrib import admin
from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError as DjangoValidationError
from django.test import RequestFactory, TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from shipments.admin import OrderAdmin
from shipments.bulk import BulkItemResult, BulkResult
from shipments.exceptions import Conflict, InsufficientBalance, TransientProviderError
from shipments.gateway import TrackingUpdate
from shipments.models import Order, ReturnState, Shipment, ShipmentState
from shipments.scheduling import ManualScheduler
from shipments.services import ShipmentOrchestrator
from shipments.stores import DjangoShipmentStore

from .fakes import ITEMS, SHIPPING_INFO, FakeGateway


class ShipmentAPITestCase(TestCase):

    def setUp(self):
        self.gateway = FakeGateway()
        self.orchestrator = self.build_orchestrator()
        self.app_config = apps.get_app_config('shipments')
        self.app_config.set_orchestrator(self.orchestrator)
        self.addCleanup(self.app_config.set_orchestrator, None)

        User = get_user_model()
        self.admin = User.objects.create_user(username='ops', password='pass12345', is_staff=True)
        self.api = APIClient()
        self.api.force_authenticate(self.admin)

        self.order = Order.objects.create(
            shipping_info=dict(SHIPPING_INFO),
            items=list(ITEMS),
            subtotal=Decimal('1499.00'),
            payment_status='paid',
        )

    def build_orchestrator(self, **kwargs):
        return ShipmentOrchestrator(self.gateway, DjangoShipmentStore(), scheduler=ManualScheduler(),
                                    default_pickup_location='Primary', **kwargs)

    def url(self, name, **kwargs):
        kwargs.setdefault('order_id', self.order.pk)
        return reverse(name, kwargs=kwargs)

    def post(self, name, data=None, **kwargs):
        return self.api.post(self.url(name, **kwargs), data or {}, format='json')

    def ship(self):
        self.post('accept-order')
        self.post('create-shipment')
        self.post('generate-awb')
        return Shipment.objects.get(order=self.order)


class PermissionTests(ShipmentAPITestCase):

    def test_staff_only(self):
        customer = get_user_model().objects.create_user(username='customer', password='pass12345')
        client = APIClient()
        client.force_authenticate(customer)
        response = client.post(self.url('accept-order'))
        self.assertEqual(response.status_code, 403)

        response = APIClient().post(self.url('accept-order'))
        self.assertEqual(response.status_code, 403)
        self.assertFalse(Shipment.objects.exists())


class LifecycleAPITests(ShipmentAPITestCase):

    def test_accept_create_awb_label(self):
        response = self.post('accept-order')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['state'], 'accepted')

        response = self.post('create-shipment', {'pickup_location': 'Primary'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['state'], 'shipment_created')
        self.assertEqual(response.data['previous_state'], 'accepted')

        response = self.post('generate-awb')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['state'], 'courier_assigned')

        response = self.post('print-label')
        self.assertTrue(response.data['data']['label_url'].endswith('.pdf'))

        detail = self.api.get(self.url('order-detail'))
        self.assertEqual(detail.status_code, 200)
        self.assertEqual(detail.data['order_status'], 'processing')
        self.assertEqual(detail.data['shipment']['courier_name'], 'Delhivery Surface')
        self.assertTrue(detail.data['shipment']['awb_code'])

    def test_second_create_is_bad_request(self):
        self.post('accept-order')
        self.post('create-shipment')
        response = self.post('create-shipment')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['error']['kind'], 'validation')
        self.assertEqual(self.gateway.calls['create_shipment'], 1)

    def test_unknown_order(self):
        response = self.post('accept-order', order_id=9999)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(self.api.get(self.url('order-detail', order_id=9999)).status_code, 404)

    def test_provider_refusal_is_unprocessable(self):
        self.post('accept-order')
        self.post('create-shipment')
        self.gateway.fail('generate_awb', InsufficientBalance('insufficient balance: recharge wallet'))

        response = self.post('generate-awb')

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.data['error']['kind'], 'insufficient_balance')
        self.assertTrue(response.data['needs_attention'])
        shipment = Shipment.objects.get(order=self.order)
        self.assertEqual(shipment.state, ShipmentState.SHIPMENT_CREATED)
        self.assertEqual(shipment.last_error_kind, 'insufficient_balance')

    def test_provider_outage_is_unavailable(self):
        self.post('accept-order')
        self.gateway.fail('create_order', TransientProviderError('502 Bad Gateway'))
        response = self.post('register-order')
        self.assertEqual(response.status_code, 503)
        self.assertTrue(response.data['error']['retryable'])

    def test_reject(self):
        self.post('accept-order')
        response = self.post('reject-order', {'reason': 'Address outside service area'})
        self.assertEqual(response.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.order_status, 'rejected')

    def test_assign_courier_needs_a_choice(self):
        response = self.post('assign-courier', {})
        self.assertEqual(response.status_code, 400)

    def test_courier_options_without_service(self):
        self.post('accept-order')
        response = self.api.get(self.url('courier-options'))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['status'], 'no_service')

    def test_schedule_pickup(self):
        self.ship()
        tomorrow = timezone.localdate() + timedelta(days=1)
        response = self.post('schedule-pickup', {'pickup_date': tomorrow.isoformat()})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['data']['pickup_date'], tomorrow.isoformat())

        again = self.post('schedule-pickup', {'pickup_date': tomorrow.isoformat()})
        self.assertEqual(again.data['status'], 'noop')
        self.assertEqual(self.gateway.calls['schedule_pickup'], 1)

    def test_cancel_with_remote_failure(self):
        self.ship()
        self.gateway.fail('cancel_shipment', TransientProviderError('Read timed out'))

        response = self.post('cancel-order', {'reason': 'Customer request'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['state'], 'cancelled')
        self.assertTrue(response.data['needs_attention'])
        detail = self.api.get(self.url('order-detail'))
        self.assertEqual(detail.data['order_status'], 'cancelled')
        self.assertEqual([i['kind'] for i in detail.data['reconciliation_issues']], ['cancel_failed'])

    def test_refresh_tracking(self):
        shipment = self.ship()
        self.gateway.tracking[shipment.awb_code] = [
            TrackingUpdate(occurred_at=timezone.now() - timedelta(hours=2), status_text='PICKED UP',
                           location='Delhi', status_code='6'),
        ]
        response = self.post('refresh-tracking')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['state'], 'in_transit')
        detail = self.api.get(self.url('order-detail'))
        self.assertEqual(detail.data['shipment']['tracking_events'][0]['status_text'], 'PICKED UP')


class BulkAPITests(ShipmentAPITestCase):

    def test_bulk_returns_per_order_results(self):
        orchestrator = mock.Mock()
        orchestrator.bulk_execute.return_value = BulkResult(kind='create_shipments', items=[
            BulkItemResult(order_id=1, status='succeeded', state='shipment_created'),
            BulkItemResult(order_id=2, status='failed', error_kind='permanent', message='Invalid pincode'),
        ])
        self.app_config.set_orchestrator(orchestrator)

        response = self.api.post(reverse('bulk-operation', kwargs={'kind': 'create_shipments'}),
                                 {'order_ids': [1, 2], 'pickup_location': 'Primary'}, format='json')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['summary']['failed'], 1)
        self.assertEqual(response.data['results'][1]['message'], 'Invalid pincode')
        orchestrator.bulk_execute.assert_called_once_with('create_shipments', [1, 2], deadline=None,
                                                          pickup_location='Primary')

    def test_too_many_orders(self):
        self.app_config.set_orchestrator(self.build_orchestrator(bulk_max_orders=2))
        response = self.api.post(reverse('bulk-operation', kwargs={'kind': 'register_orders'}),
                                 {'order_ids': [1, 2, 3]}, format='json')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['error']['details']['limit'], 2)
        self.assertEqual(self.gateway.calls['create_order'], 0)

    def test_unknown_kind_and_empty_list(self):
        url = reverse('bulk-operation', kwargs={'kind': 'teleport'})
        self.assertEqual(self.api.post(url, {'order_ids': [1]}, format='json').status_code, 400)
        url = reverse('bulk-operation', kwargs={'kind': 'register_orders'})
        self.assertEqual(self.api.post(url, {'order_ids': []}, format='json').status_code, 400)


class AccountAPITests(ShipmentAPITestCase):

    def test_wallet_balance_cached_unless_refreshed(self):
        first = self.api.get(reverse('wallet-balance'))
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.data['balance'], '500.00')
        self.assertFalse(first.data['is_low'])

        self.api.get(reverse('wallet-balance'))
        self.assertEqual(self.gateway.calls['get_wallet_balance'], 1)

        self.gateway.balance = Decimal('40.00')
        refreshed = self.api.get(reverse('wallet-balance'), {'refresh': '1'})
        self.assertEqual(refreshed.data['balance'], '40.00')
        self.assertTrue(refreshed.data['is_low'])

    def test_wallet_outage(self):
        self.gateway.fail('get_wallet_balance', TransientProviderError('504'))
        response = self.api.get(reverse('wallet-balance'))
        self.assertEqual(response.status_code, 503)

    def test_pickup_locations(self):
        response = self.api.get(reverse('pickup-locations'))
        self.assertEqual(response.data['pickup_locations'][0]['name'], 'Primary')


class TrackingWebhookTests(ShipmentAPITestCase):

    def send(self, payload, **headers):
        body = payload if isinstance(payload, str) else json.dumps(payload)
        return self.client.post(reverse('tracking-webhook'), data=body, content_type='application/json', **headers)

    def test_verification_get(self):
        response = self.client.get(reverse('tracking-webhook'))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], 'active')

    def test_empty_body_validates(self):
        self.assertEqual(self.send('').status_code, 200)

    def test_invalid_json(self):
        self.assertEqual(self.send('{not json').status_code, 400)

    def test_json_that_is_not_an_object(self):
        self.assertEqual(self.send('[]').status_code, 400)
        self.assertEqual(self.send('"DELIVERED"').status_code, 400)

    @override_settings(LOGISTICS_WEBHOOK_TOKEN='s3cret')
    def test_token_is_checked(self):
        payload = {'awb': 'AWB1', 'current_status': 'DELIVERED'}
        self.assertEqual(self.send(payload).status_code, 401)
        self.assertEqual(self.send(payload, HTTP_X_API_KEY='wrong').status_code, 401)
        self.assertEqual(self.send(payload, HTTP_X_API_KEY='s3cret').status_code, 404)

    def test_unknown_order(self):
        response = self.send({'awb': 'NOPE', 'order_id': 'ORD99999', 'current_status': 'DELIVERED',
                              'current_timestamp': '2026-03-05 12:00:00'})
        self.assertEqual(response.status_code, 404)

    def test_delivery_is_applied(self):
        shipment = self.ship()
        payload = {
            'awb': shipment.awb_code,
            'order_id': self.order.channel_order_id,
            'current_status': 'DELIVERED',
            'current_timestamp': '2026-03-05 12:00:00',
            'scans': [
                {'date': '2026-03-04 09:00:00', 'activity': 'Shipment picked', 'sr-status-label': 'PICKED UP'},
                {'date': 'garbled', 'activity': 'ignored'},
            ],
        }

        response = self.send(payload)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['message'], '2 update(s) applied')
        shipment.refresh_from_db()
        self.assertEqual(shipment.state, ShipmentState.DELIVERED)
        self.assertIsNotNone(shipment.picked_up_at)

        replay = self.send(payload)
        self.assertEqual(replay.status_code, 200)
        self.assertEqual(shipment.tracking_events.count(), 2)


class StoreAndModelTests(ShipmentAPITestCase):

    def test_store_refuses_broken_identifier_chain(self):
        self.post('accept-order')
        shipment = Shipment.objects.get(order=self.order)
        shipment.shipment_id = 'SH1'
        with self.assertRaises(ValueError):
            DjangoShipmentStore().save_shipment(shipment)

    def test_lookup_by_any_identifier(self):
        shipment = self.ship()
        store = DjangoShipmentStore()
        self.assertEqual(store.find_order_id(awb_code=shipment.awb_code), self.order.pk)
        self.assertEqual(store.find_order_id(provider_order_id=shipment.provider_order_id), self.order.pk)
        self.assertEqual(store.find_order_id(channel_order_id=f'ORD{self.order.pk}'), self.order.pk)
        self.assertIsNone(store.find_order_id(channel_order_id='ORD0'))
        self.assertEqual(store.open_tracking_order_ids(), [self.order.pk])

    def test_snapshot_frozen_after_accept(self):
        self.order.shipping_info['city'] = 'Mysuru'
        self.order.clean()

        self.post('accept-order')
        self.order.refresh_from_db()
        self.order.shipping_info['city'] = 'Mysuru'
        with self.assertRaises(DjangoValidationError):
            self.order.clean()

    def test_stale_shipment_write_is_refused(self):
        self.post('accept-order')
        store = DjangoShipmentStore()
        web = Shipment.objects.get(order=self.order)
        poller = Shipment.objects.get(order=self.order)

        poller.tracking_status = 'PICKED UP'
        store.save_shipment(poller)
        web.label_url = 'https://labels.example.com/1.pdf'
        with self.assertRaises(Conflict):
            store.save_shipment(web)

        stored = Shipment.objects.get(order=self.order)
        self.assertEqual(stored.tracking_status, 'PICKED UP')
        self.assertIsNone(stored.label_url)
        self.assertEqual(stored.version, poller.version)

    def test_orders_closed_outside_the_machine_are_not_tracked(self):
        self.ship()
        Order.objects.filter(pk=self.order.pk).update(order_status='cancelled')
        self.assertEqual(DjangoShipmentStore().open_tracking_order_ids(), [])

    def test_admin_locks_order_status_once_shipped(self):
        order_admin = OrderAdmin(Order, admin.site)
        request = RequestFactory().get('/admin/shipments/order/')
        self.assertNotIn('order_status', order_admin.get_readonly_fields(request, self.order))

        self.post('accept-order')
        order = Order.objects.select_related('shipment').get(pk=self.order.pk)
        self.assertIn('order_status', order_admin.get_readonly_fields(request, order))


class ReturnAPITests(ShipmentAPITestCase):

    def delivered(self):
        self.ship()
        result = self.orchestrator.apply_tracking(self.order.pk, [
            TrackingUpdate(occurred_at=timezone.now() - timedelta(hours=2), status_text='DELIVERED'),
        ])
        self.assertEqual(result.state, ShipmentState.DELIVERED)

    def test_return_lifecycle(self):
        self.delivered()

        response = self.post('request-return', {'reason': 'Wrong size'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['data']['return_state'], ReturnState.REQUESTED)

        response = self.post('review-return', {'approve': True, 'note': 'Unused, tags on'})
        self.assertEqual(response.status_code, 200)

        response = self.post('create-return-shipment')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['data']['rma_number'], f'RET-{self.order.pk}')

        detail = self.api.get(self.url('order-detail')).data['shipment']
        self.assertEqual(detail['return_state'], ReturnState.AWB_GENERATED)
        self.assertEqual(detail['rma_number'], f'RET-{self.order.pk}')
        self.assertTrue(detail['return_awb_code'])
        self.assertEqual(detail['state'], ShipmentState.DELIVERED)

    def test_request_needs_reason(self):
        self.delivered()
        self.assertEqual(self.post('request-return', {}).status_code, 400)
        self.assertEqual(self.post('review-return', {'note': 'x'}).status_code, 400)

    def test_return_before_delivery_is_refused(self):
        self.ship()
        response = self.post('request-return', {'reason': 'Wrong size'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['error']['kind'], 'validation')

    def test_unapproved_return_gets_no_shipment(self):
        self.delivered()
        self.post('request-return', {'reason': 'Wrong size'})
        response = self.post('create-return-shipment')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.gateway.calls['create_return_order'], 0)
