"""
Retry policy shared by every provider call.

Transient failures (timeouts, 5xx, 429) are retried with exponential backoff and
jitter. Permanent failures surface at once. Ambiguous failures on writes are
only retried after a lookup confirms the write did not land.
"""
import logging
import random
import time
from typing import Callable, Optional

from django.conf import settings
from tenacity import Retrying, before_sleep_log, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from .exceptions import AmbiguousProviderError, TransientProviderError

logger = logging.getLogger(__name__)


class wait_jittered_exponential(wait_base):
    """base * factor ** (attempt - 1), spread by +/- jitter."""

    def __init__(self, base: float = 0.5, factor: float = 2, jitter: float = 0.2, rng: random.Random = None):
        self.base = base
        self.factor = factor
        self.jitter = jitter
        self.rng = rng or random.Random()

    def __call__(self, retry_state) -> float:
        delay = self.base * (self.factor ** (retry_state.attempt_number - 1))
        return delay * (1 + self.rng.uniform(-self.jitter, self.jitter))


class RetryPolicy:

    def __init__(self, attempts: int = 3, base_delay: float = 0.5, factor: float = 2,
                 jitter: float = 0.2, sleep: Callable[[float], None] = time.sleep,
                 rng: random.Random = None):
        self.attempts = attempts
        self.wait = wait_jittered_exponential(base_delay, factor, jitter, rng)
        self.sleep = sleep

    @classmethod
    def from_settings(cls, **overrides):
        options = {
            'attempts': settings.LOGISTICS_RETRY_ATTEMPTS,
            'base_delay': settings.LOGISTICS_RETRY_BASE_DELAY,
            'factor': settings.LOGISTICS_RETRY_FACTOR,
            'jitter': settings.LOGISTICS_RETRY_JITTER,
        }
        options.update(overrides)
        return cls(**options)

    def run(self, fn: Callable, *, operation: str, idempotent: bool = True,
            lookup: Optional[Callable] = None):
        """
        Call ``fn`` under the policy.

        ``lookup`` re-reads provider state after an ambiguous failure and returns
        the already-applied result, or None if the write has to be repeated.
        Non-idempotent calls without a lookup are never retried on ambiguity.
        """
        ambiguous = {'seen': False}

        def should_retry(exc):
            if not isinstance(exc, TransientProviderError):
                return False
            if isinstance(exc, AmbiguousProviderError):
                return idempotent or lookup is not None
            return True

        def attempt():
            if ambiguous['seen'] and lookup is not None:
                existing = lookup()
                if existing is not None:
                    logger.info(f"{operation}: previous attempt already applied at provider, using it")
                    return existing
                logger.info(f"{operation}: previous attempt did not land, repeating")
            try:
                return fn()
            except AmbiguousProviderError:
                ambiguous['seen'] = True
                raise

        retryer = Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=self.wait,
            retry=retry_if_exception(should_retry),
            sleep=self.sleep,
            reraise=True,
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        try:
            return retryer(attempt)
        except TransientProviderError as e:
            attempts = retryer.statistics.get('attempt_number', 1)
            e.details.setdefault('attempts', attempts)
            logger.error(f"{operation} gave up after {attempts} attempt(s): {e}")
            raise
