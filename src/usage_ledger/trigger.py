"""Retry trigger: run an ingestion job with bounded exponential backoff."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from .errors import IngestError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    factor: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        return self.base_delay_seconds * self.factor ** (attempt - 1)


def run_with_retry(
    job: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call `job` until it succeeds or attempts run out.

    Only retryable IngestError kinds are retried; anything else propagates on
    the first occurrence. The last error is re-raised when attempts run out.
    """
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return job()
        except IngestError as e:
            if not e.retryable:
                raise
            if attempt == attempts:
                logger.error(f"Giving up after {attempt} attempt(s): {e}")
                raise
            delay = policy.delay_for(attempt)
            logger.warning(f"Attempt {attempt}/{attempts} failed ({e}); retrying in {delay:.1f}s")
            sleep(delay)
    raise AssertionError("unreachable")


class InProcessTrigger:
    """Queue-style adapter: each fire() is one delivery of the job."""

    def __init__(
        self,
        job: Callable[[], T],
        policy: Optional[RetryPolicy] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.job = job
        self.policy = policy or RetryPolicy()
        self.sleep = sleep
        self.fired = 0

    def fire(self) -> T:
        self.fired += 1
        logger.debug(f"Trigger fired (delivery {self.fired})")
        return run_with_retry(self.job, self.policy, sleep=self.sleep)
