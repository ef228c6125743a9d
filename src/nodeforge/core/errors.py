"""
Error taxonomy for the spawn pipelines.

Degraded placement and zero-activity cycles are not errors; they are
modelled as fallback paths and surfaced through telemetry and audit logs.
"""

from __future__ import annotations


class SpawnError(Exception):
    """Base class for every failure raised by this package."""

    retryable: bool = False


class InvalidInputError(SpawnError, ValueError):
    """Job inputs or configuration are invalid. Fails before any step runs."""


class ThresholdNotMetError(SpawnError):
    """A phase transition was requested before its activity threshold.

    Recoverable: the job aborts cleanly and is expected to be re-triggered.
    """

    def __init__(self, phase: int, observed: int, threshold: int) -> None:
        super().__init__(f"Threshold not met for phase {phase}: {observed} < {threshold}")
        self.phase = phase
        self.observed = observed
        self.threshold = threshold


class SourceLoadError(SpawnError):
    """The digit stream or land geometry could not be loaded."""

    retryable = True


class PersistenceError(SpawnError):
    """A bulk write failed and was rolled back."""

    retryable = True


class StepTimeoutError(SpawnError):
    """A job step exceeded its timeout.

    Not retried: the abandoned step may still be writing.
    """


class JobAlreadyRunningError(SpawnError):
    """A job with the same single-flight key is already in progress."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Job '{key}' is already running")
        self.key = key
