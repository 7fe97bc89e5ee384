import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .clock import SystemClock
from .state_machine import TransitionResult

logger = logging.getLogger(__name__)

JOB_NAME = 'tracking-sweep'


@dataclass
class SweepReport:
    refreshed: List[int] = field(default_factory=list)
    unchanged: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)
    not_attempted: List[int] = field(default_factory=list)
    idle: bool = False

    @property
    def total(self) -> int:
        return len(self.refreshed) + len(self.unchanged) + len(self.failed) + len(self.not_attempted)

    def as_dict(self):
        return {
            'idle': self.idle,
            'refreshed': self.refreshed,
            'unchanged': self.unchanged,
            'failed': self.failed,
            'not_attempted': self.not_attempted,
        }


class TrackingPoller:
    """
    Periodically refreshes tracking for every order with an open AWB.

    A sweep does nothing when no such order exists. Each order is refreshed
    through the state machine's ``refresh_tracking``, the same path an on-demand
    refresh takes.
    """

    def __init__(self, machine, store, scheduler, interval: float = 30, max_workers: int = 4,
                 sweep_deadline: float = None, clock=None):
        self.machine = machine
        self.store = store
        self.scheduler = scheduler
        self.interval = interval
        self.max_workers = max_workers
        self.sweep_deadline = sweep_deadline
        self.clock = clock or SystemClock()
        self.last_report: Optional[SweepReport] = None
        self._stop = threading.Event()

    def start(self):
        self._stop.clear()
        self.scheduler.every(self.interval, self.sweep, name=JOB_NAME)
        self.scheduler.start()
        logger.info(f"Tracking poller started, sweeping every {self.interval}s")

    def stop(self):
        self._stop.set()
        self.scheduler.stop()
        logger.info("Tracking poller stopped")

    def refresh(self, order_id) -> TransitionResult:
        return self.machine.refresh_tracking(order_id)

    def sweep(self) -> SweepReport:
        order_ids = self.store.open_tracking_order_ids()
        if not order_ids:
            logger.debug("Tracking sweep idle: no open shipments")
            self.last_report = SweepReport(idle=True)
            return self.last_report

        stop_at = self.clock.monotonic() + self.sweep_deadline if self.sweep_deadline else None

        def should_stop():
            return self._stop.is_set() or (stop_at is not None and self.clock.monotonic() >= stop_at)

        def run(order_id):
            if should_stop():
                return None
            return self.refresh(order_id)

        report = SweepReport()
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='tracking') as pool:
            futures = [(order_id, pool.submit(run, order_id)) for order_id in order_ids]
            for order_id, future in futures:
                try:
                    result = future.result()
                except Exception as e:
                    logger.exception(f"Tracking refresh crashed for order {order_id}")
                    report.failed[order_id] = str(e)
                    continue
                if result is None:
                    report.not_attempted.append(order_id)
                elif not result.ok:
                    report.failed[order_id] = f"{result.error_kind}: {result.message}"
                elif result.changed:
                    report.refreshed.append(order_id)
                else:
                    report.unchanged.append(order_id)

        logger.info(
            f"Tracking sweep: {len(report.refreshed)} refreshed, {len(report.unchanged)} unchanged, "
            f"{len(report.failed)} failed, {len(report.not_attempted)} not attempted"
        )
        self.last_report = report
        return report
