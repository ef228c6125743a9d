"""
Step runner for spawn jobs.

A job is a sequence of named steps executed under one single-flight key.
Each step runs with a timeout and the runner's retry policy, and leaves a
``StepRecord`` in the job's log. Node generation is not idempotent on its
own, so the single-flight guard (not step replay) is what keeps a phase
from being spawned twice concurrently.

A step that times out is abandoned, never retried: its thread keeps
running, and the job's key stays held until that thread ends, so no new
job can start the same work underneath it.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Iterator, TypeVar

from nodeforge.core.errors import JobAlreadyRunningError, StepTimeoutError
from nodeforge.jobs.retry import RetryPolicy, run_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class StepRecord:
    job_key: str
    name: str
    status: str  # "completed" or "failed"
    attempts: int
    duration_seconds: float
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Job:
    """Handle passed to workflow code while a job holds its key."""

    key: str
    runner: "JobRunner"
    log: list[StepRecord] = field(default_factory=list)
    abandoned: list[Future] = field(default_factory=list)

    def step(self, name: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run one named step with timeout and retry; record it in the log."""
        attempts = 0

        def attempt() -> T:
            nonlocal attempts
            attempts += 1
            return self.runner.call_with_timeout(self, name, func, args, kwargs)

        start = time.monotonic()
        try:
            result = run_with_retry(self.runner.policy, attempt, label=f"{self.key}/{name}", sleep=self.runner.sleep)
        except Exception as exc:
            self.log.append(StepRecord(self.key, name, "failed", attempts, time.monotonic() - start, str(exc)))
            logger.error("Job %s: step %s failed after %d attempt(s): %s", self.key, name, attempts, exc)
            raise
        self.log.append(StepRecord(self.key, name, "completed", attempts, time.monotonic() - start))
        logger.debug("Job %s: step %s completed in %d attempt(s)", self.key, name, attempts)
        return result

    def abandon(self, name: str, future: Future) -> None:
        self.abandoned.append(future)
        logger.warning("Job %s: step %s abandoned while still running", self.key, name)

    def sleep_until(self, name: str, when: float, clock: Callable[[], float] = time.time) -> None:
        """Block until the epoch timestamp ``when``; recorded as a step."""
        delay = when - clock()
        if delay > 0:
            logger.info("Job %s: %s waiting %.1fs", self.key, name, delay)
            self.runner.sleep(delay)
        self.log.append(StepRecord(self.key, name, "completed", 1, max(0.0, delay)))


class JobRunner:
    """Runs jobs under single-flight keys.

    Parameters
    ----------
    policy : RetryPolicy | None
        Retry schedule applied to every step.
    step_timeout : float | None
        Seconds before a step is abandoned with ``StepTimeoutError``.
        ``None`` runs steps inline without a timeout.
    step_timeouts : dict[str, float | None] | None
        Per-step overrides of ``step_timeout``, keyed by step name.
    sleep : callable
        Used for backoff and scheduled waits.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        step_timeout: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        step_timeouts: dict[str, float | None] | None = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.step_timeout = step_timeout
        self.step_timeouts = dict(step_timeouts or {})
        self.sleep = sleep
        self._running: set[str] = set()
        self._lock = threading.Lock()
        self.history: list[StepRecord] = []

    def is_running(self, key: str) -> bool:
        with self._lock:
            return key in self._running

    def timeout_for(self, name: str) -> float | None:
        return self.step_timeouts.get(name, self.step_timeout)

    @contextmanager
    def job(self, key: str) -> Iterator[Job]:
        """Hold ``key`` for the duration of the block, and past it while an
        abandoned step of the job is still running.

        Raises
        ------
        JobAlreadyRunningError
            If another job with the same key is in progress.
        """
        with self._lock:
            if key in self._running:
                raise JobAlreadyRunningError(key)
            self._running.add(key)
        handle = Job(key=key, runner=self)
        logger.info("Job %s started", key)
        try:
            yield handle
        finally:
            pending = [f for f in handle.abandoned if not f.done()]
            with self._lock:
                self.history.extend(handle.log)
                if not pending:
                    self._running.discard(key)
            if pending:
                logger.warning(
                    "Job %s finished with %d abandoned step(s) still running; key held until they end",
                    key, len(pending),
                )
                self._release_after(key, pending)
            logger.info("Job %s finished (%d steps)", key, len(handle.log))

    def _release_after(self, key: str, futures: list[Future]) -> None:
        remaining = len(futures)
        count_lock = threading.Lock()

        def finished(_future: Future) -> None:
            nonlocal remaining
            with count_lock:
                remaining -= 1
                last = remaining == 0
            if last:
                with self._lock:
                    self._running.discard(key)
                logger.info("Job %s: abandoned steps ended, key released", key)

        for future in futures:
            future.add_done_callback(finished)

    def call_with_timeout(
        self,
        job: Job,
        name: str,
        func: Callable[..., T],
        args: tuple[Any, ...] = (),
        kwargs: dict[str, Any] | None = None,
    ) -> T:
        kwargs = kwargs or {}
        timeout = self.timeout_for(name)
        if timeout is None:
            return func(*args, **kwargs)
        # A timed-out worker thread cannot be killed; it is left to finish
        # in the background and its result is discarded.
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"step-{name}")
        try:
            future = pool.submit(func, *args, **kwargs)
            try:
                return future.result(timeout=timeout)
            except FutureTimeout as exc:
                job.abandon(name, future)
                raise StepTimeoutError(f"Step {name} exceeded {timeout}s") from exc
        finally:
            pool.shutdown(wait=False)
