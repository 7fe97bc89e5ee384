import logging
import signal
import threading

from django.core.management.base import BaseCommand

from shipments.services import get_orchestrator

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = 'Poll the logistics provider for tracking updates on every open shipment'

    def add_arguments(self, parser):
        parser.add_argument('--once', action='store_true', help='Run a single sweep and exit')
        parser.add_argument('--interval', type=float, help='Seconds between sweeps (defaults to LOGISTICS_TRACKING_INTERVAL)')

    def handle(self, *args, **options):
        poller = get_orchestrator().poller
        if options['interval']:
            poller.interval = options['interval']

        if options['once']:
            report = poller.sweep()
            if report.idle:
                self.stdout.write('No open shipments to track')
            else:
                self.stdout.write(self.style.SUCCESS(
                    f"Refreshed {len(report.refreshed)}, unchanged {len(report.unchanged)}, "
                    f"failed {len(report.failed)}"
                ))
                for order_id, reason in report.failed.items():
                    self.stdout.write(self.style.WARNING(f"Order {order_id}: {reason}"))
            return

        stopped = threading.Event()

        def shutdown(signum, frame):
            logger.info(f"Received signal {signum}, stopping tracking poller")
            stopped.set()

        signal.signal(signal.SIGINT, shutdown)
        signal.signal(signal.SIGTERM, shutdown)

        poller.start()
        self.stdout.write(self.style.SUCCESS(f"Tracking poller running every {poller.interval}s"))
        try:
            stopped.wait()
        finally:
            poller.stop()
            self.stdout.write('Tracking poller stopped')
