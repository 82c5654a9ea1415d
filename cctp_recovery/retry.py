"""
CCTP Recovery - Shared retry/backoff policy

Every network-calling component (RPC reader, attestation client) retries through
retry_call() so attempt counts and delays are configured in one place.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to call, and how long to wait between calls.

    ``backoff=1.0`` gives a fixed interval. ``jitter`` adds up to that fraction
    of the delay at random.
    """

    attempts: int = 1
    delay: float = 0.0
    backoff: float = 1.0
    max_delay: Optional[float] = None
    jitter: float = 0.0

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("RetryPolicy.attempts must be >= 1")

    def delay_for(self, attempt):
        """Delay to sleep after the given (1-based) failed attempt."""
        delay = self.delay * (self.backoff ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)
        return delay


def retry_call(fn, policy, retry_on=(Exception,), give_up_on=(), sleep=time.sleep, on_retry=None, label=None):
    """
    Call fn() until it returns, retrying exceptions in ``retry_on``.

    Exceptions in ``give_up_on`` are re-raised immediately even when they also
    match ``retry_on``.

    An exception with a ``retry_after`` attribute (seconds) stretches that one
    wait to at least its value.

    The last exception is re-raised once ``policy.attempts`` calls have failed.
    ``on_retry(attempt, exc, delay)`` is called before each sleep.
    """
    label = label or getattr(fn, "__name__", "call")
    for attempt in range(1, policy.attempts + 1):
        try:
            return fn()
        except give_up_on:
            raise
        except retry_on as e:
            if attempt >= policy.attempts:
                raise
            delay = policy.delay_for(attempt)
            retry_after = getattr(e, "retry_after", None)
            if retry_after is not None:
                delay = max(delay, retry_after)
            logger.debug("%s failed (attempt %d/%d): %s; retrying in %.1fs",
                         label, attempt, policy.attempts, e, delay)
            if on_retry is not None:
                on_retry(attempt, e, delay)
            if delay > 0:
                sleep(delay)
