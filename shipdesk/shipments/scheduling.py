"""
Schedulers for periodic jobs.

``IntervalScheduler`` runs jobs on an APScheduler background thread.
``ManualScheduler`` only runs them when ``tick()`` is called, for tests and
one-shot commands.
"""
import logging
from typing import Callable, Dict

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


class Scheduler:
    """start / stop / tick over a set of named interval jobs."""

    def __init__(self):
        self.jobs: Dict[str, Callable] = {}
        self.running = False

    def every(self, seconds: float, job: Callable, name: str):
        self.jobs[name] = job

    def start(self):
        self.running = True

    def stop(self):
        self.running = False

    def tick(self):
        """Run every job once, now."""
        for name, job in list(self.jobs.items()):
            logger.debug(f"Running job {name}")
            job()


class ManualScheduler(Scheduler):
    """Jobs run only on tick()."""

    def __init__(self):
        super().__init__()
        self.intervals: Dict[str, float] = {}
        self.ticks = 0

    def every(self, seconds: float, job: Callable, name: str):
        super().every(seconds, job, name)
        self.intervals[name] = seconds

    def tick(self):
        self.ticks += 1
        super().tick()


class IntervalScheduler(Scheduler):

    def __init__(self, scheduler: BackgroundScheduler = None):
        super().__init__()
        self._scheduler = scheduler or BackgroundScheduler(
            job_defaults={'coalesce': True, 'max_instances': 1, 'misfire_grace_time': 30},
        )
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)

    def every(self, seconds: float, job: Callable, name: str):
        super().every(seconds, job, name)
        self._scheduler.add_job(
            job,
            trigger=IntervalTrigger(seconds=seconds),
            id=name,
            name=name,
            replace_existing=True,
        )
        logger.info(f"Job {name} scheduled every {seconds}s")

    def start(self):
        if self.running:
            return
        self._scheduler.start()
        super().start()
        logger.info(f"Scheduler started with {len(self.jobs)} job(s)")

    def stop(self):
        if not self.running:
            return
        self._scheduler.shutdown(wait=True)
        super().stop()
        logger.info("Scheduler stopped")

    @staticmethod
    def _on_job_error(event):
        logger.error(f"Job {event.job_id} raised: {event.exception}")

    @staticmethod
    def _on_job_missed(event):
        logger.warning(f"Job {event.job_id} missed its run at {event.scheduled_run_time}")
