"""Exception taxonomy shared by the worker core and backends."""

from __future__ import annotations


class QueueWorkerError(Exception):
    """Base class for worker errors."""


class FatalBackendError(QueueWorkerError):
    """Backend kept failing on reservation; the worker process must stop."""


class DeserializationError(QueueWorkerError):
    """Job payload could not be reconstructed. Never retried."""


class ResubmitJob(QueueWorkerError):
    """Raised by job logic to ask for re-submission instead of completion."""


class WorkerTimeout(QueueWorkerError):
    """Job exceeded the configured max run time."""

    def __init__(self, seconds: float) -> None:
        super().__init__(f"execution expired after {seconds:g} seconds")
        self.seconds = seconds


class SignalAbort(BaseException):  # noqa: N818
    """Immediate abort requested by a signal under a raising signal policy.

    Derives from BaseException so job-level ``except Exception`` handlers
    never swallow it.
    """

    def __init__(self, signal_name: str) -> None:
        super().__init__(signal_name)
        self.signal_name = signal_name


class InvalidCallbackError(QueueWorkerError):
    """Callback registered for an unknown lifecycle event or with bad arity."""


class LifecycleFrozenError(QueueWorkerError):
    """Callback registration attempted after the worker started."""
