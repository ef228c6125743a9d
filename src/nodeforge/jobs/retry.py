"""
Retry policy for job steps.

Only errors flagged ``retryable`` (source loads, persistence) are retried;
everything else propagates immediately, step timeouts included.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, TypeVar

from nodeforge.core.errors import SpawnError

logger = logging.getLogger(__name__)

T = TypeVar("T")

BACKOFF_STRATEGIES = ("fixed", "exponential", "jitter")


class RetryPolicy:
    """Retry limit and delay schedule for a job step.

    Parameters
    ----------
    retry_limit : int
        Retries after the first attempt.
    backoff : str
        ``"fixed"``, ``"exponential"`` or ``"jitter"``.
    base_delay : float
        Base delay in seconds.
    """

    def __init__(self, retry_limit: int = 3, backoff: str = "exponential", base_delay: float = 1.0) -> None:
        if backoff not in BACKOFF_STRATEGIES:
            raise ValueError(f"Unknown backoff {backoff!r}; expected one of {BACKOFF_STRATEGIES}")
        self.retry_limit = retry_limit
        self.backoff = backoff
        self.base_delay = base_delay

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.retry_limit

    def get_delay(self, attempt: int) -> float:
        if self.backoff == "fixed":
            return self.base_delay
        if self.backoff == "exponential":
            return self.base_delay * (2 ** attempt)
        return self.base_delay * random.uniform(1, 2 ** attempt)


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, SpawnError) and exc.retryable


def run_with_retry(
    policy: RetryPolicy,
    func: Callable[..., T],
    *args: Any,
    label: str = "step",
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """Call ``func`` until it succeeds, a non-retryable error is raised, or
    the policy gives up (the last error is re-raised)."""
    attempt = 0
    while True:
        try:
            return func(*args, **kwargs)
        except SpawnError as exc:
            if not is_retryable(exc) or not policy.should_retry(attempt):
                raise
            delay = policy.get_delay(attempt)
            logger.exception("Step %s failed (attempt %d), retrying in %.2fs", label, attempt + 1, delay)
            sleep(delay)
            attempt += 1
