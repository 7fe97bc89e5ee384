from datetime import timedelta

from django.test import SimpleTestCase

from shipments.clock import FakeClock
from shipments.exceptions import TransientProviderError
from shipments.gateway import TrackingUpdate
from shipments.locks import OrderLocks
from shipments.models import ShipmentState
from shipments.scheduling import ManualScheduler
from shipments.state_machine import OrderShipmentStateMachine
from shipments.stores import InMemoryShipmentStore
from shipments.tracking import JOB_NAME, TrackingPoller

from .fakes import T0, FakeGateway, make_order


def update(hours, status_text):
    return TrackingUpdate(occurred_at=T0 + timedelta(hours=hours), status_text=status_text, location='Hub')


class TrackingPollerTests(SimpleTestCase):

    def setUp(self):
        self.clock = FakeClock(T0)
        self.gateway = FakeGateway()
        self.store = InMemoryShipmentStore()
        self.machine = OrderShipmentStateMachine(self.gateway, self.store, locks=OrderLocks(timeout=2),
                                                 clock=self.clock, default_pickup_location='Primary')
        self.scheduler = ManualScheduler()
        self.poller = TrackingPoller(self.machine, self.store, self.scheduler, interval=30,
                                     max_workers=2, clock=self.clock)

    def ship(self, order_id):
        self.store.add_order(make_order(order_id))
        self.machine.accept(order_id)
        self.machine.create_shipment(order_id)
        self.machine.generate_awb(order_id)
        return self.store.get_shipment(order_id).awb_code

    def test_idle_sweep_makes_no_calls(self):
        self.store.add_order(make_order(1))
        self.machine.accept(1)

        report = self.poller.sweep()

        self.assertTrue(report.idle)
        self.assertEqual(self.gateway.calls['track_by_awb'], 0)

    def test_sweep_sorts_orders_by_outcome(self):
        awb1 = self.ship(1)
        self.ship(2)
        awb3 = self.ship(3)
        self.gateway.tracking[awb1] = [update(1, 'PICKED UP')]

        def flaky(name):
            if name == 'track_by_awb' and self.gateway.history[-1][1][0] == awb3:
                raise TransientProviderError('504 Gateway Timeout')

        self.gateway.on_call = flaky
        self.poller.max_workers = 1
        report = self.poller.sweep()

        self.assertEqual(report.refreshed, [1])
        self.assertEqual(report.unchanged, [2])
        self.assertEqual(list(report.failed), [3])
        self.assertIn('transient', report.failed[3])
        self.assertEqual(report.total, 3)
        self.assertEqual(self.store.get_shipment(1).state, ShipmentState.IN_TRANSIT)

    def test_closed_shipments_are_not_polled(self):
        awb = self.ship(1)
        self.gateway.tracking[awb] = [update(1, 'DELIVERED')]
        self.poller.sweep()
        self.assertEqual(self.store.get_shipment(1).state, ShipmentState.DELIVERED)

        report = self.poller.sweep()
        self.assertTrue(report.idle)
        self.assertEqual(self.gateway.calls['track_by_awb'], 1)

    def test_orders_closed_outside_the_machine_are_not_polled(self):
        self.ship(1)
        self.ship(2)
        self.ship(3)
        for order_id, status in ((1, 'delivered'), (2, 'cancelled')):
            order = self.store.get_order(order_id)
            order.order_status = status
            self.store.save_order(order)

        report = self.poller.sweep()

        self.assertEqual(report.total, 1)
        self.assertEqual(report.unchanged, [3])
        self.assertEqual(self.gateway.calls['track_by_awb'], 1)

    def test_older_poll_data_never_moves_state_back(self):
        awb = self.ship(1)
        self.machine.apply_tracking(1, [update(6, 'OUT FOR DELIVERY')])
        self.gateway.tracking[awb] = [update(2, 'PICKED UP'), update(4, 'IN TRANSIT')]

        report = self.poller.sweep()

        self.assertEqual(report.unchanged, [1])
        shipment = self.store.get_shipment(1)
        self.assertEqual(shipment.last_tracking_sync_at, T0 + timedelta(hours=6))
        self.assertEqual(shipment.tracking_status, 'OUT FOR DELIVERY')

    def test_start_registers_job_and_tick_runs_it(self):
        awb = self.ship(1)
        self.gateway.tracking[awb] = [update(1, 'SHIPPED')]

        self.poller.start()
        self.assertTrue(self.scheduler.running)
        self.assertEqual(self.scheduler.intervals[JOB_NAME], 30)

        self.scheduler.tick()
        self.assertEqual(self.scheduler.ticks, 1)
        self.assertEqual(self.poller.last_report.refreshed, [1])

    def test_stop_halts_remaining_refreshes(self):
        self.ship(1)
        self.ship(2)
        self.poller.start()
        self.poller.stop()

        report = self.poller.sweep()

        self.assertFalse(self.scheduler.running)
        self.assertEqual(sorted(report.not_attempted), [1, 2])
        self.assertEqual(self.gateway.calls['track_by_awb'], 0)

    def test_sweep_deadline(self):
        self.ship(1)
        self.ship(2)
        self.gateway.on_call = lambda name: self.clock.advance(20)
        poller = TrackingPoller(self.machine, self.store, ManualScheduler(), max_workers=1,
                                sweep_deadline=10, clock=self.clock)

        report = poller.sweep()

        self.assertEqual(report.unchanged, [1])
        self.assertEqual(report.not_attempted, [2])

    def test_refresh_uses_the_same_path(self):
        awb = self.ship(1)
        self.gateway.tracking[awb] = [update(1, 'PICKED UP')]
        result = self.poller.refresh(1)
        self.assertTrue(result.changed)
        self.assertEqual(result.state, ShipmentState.IN_TRANSIT)
        self.assertEqual(self.store.tracking_events(1)[0].status_text, 'PICKED UP')
