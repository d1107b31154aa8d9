"""Timeout-bounded execution of one reserved job."""

from __future__ import annotations

import contextvars
import logging
import signal
import threading
import time
import traceback
from collections.abc import Callable
from typing import Any, TypeVar

from queue_worker.contracts import Job
from queue_worker.errors import DeserializationError, ResubmitJob, WorkerTimeout
from queue_worker.lifecycle import Lifecycle
from queue_worker.log_context import WorkerLog, bind_correlation_id
from queue_worker.models import ExecutionResult, OutcomeKind

T = TypeVar("T")

logger = logging.getLogger(__name__)


class JobExecutor:
    """Runs a job payload and classifies how it ended."""

    def __init__(
        self,
        *,
        lifecycle: Lifecycle,
        log: WorkerLog,
        max_run_time_seconds: float,
    ) -> None:
        self.lifecycle = lifecycle
        self.log = log
        self.max_run_time_seconds = max_run_time_seconds

    def run(self, job: Job) -> ExecutionResult:
        with bind_correlation_id(getattr(job, "correlation_id", None)):
            self.log.job_say(job, "RUNNING")
            started = time.monotonic()
            try:
                call_with_timeout(
                    lambda: self.lifecycle.run_callbacks(
                        "invoke_job",
                        job,
                        block=lambda reserved: reserved.invoke_payload(),
                    ),
                    self.max_run_time_seconds,
                )
                job.destroy()
            except ResubmitJob:
                self.log.job_say(job, "RESUBMITTED")
                return ExecutionResult(
                    kind=OutcomeKind.RESUBMITTED,
                    runtime_seconds=time.monotonic() - started,
                )
            except DeserializationError as error:
                job.last_error = format_error(error)
                return self._failure(OutcomeKind.DESERIALIZATION_FAILED, error, started)
            except WorkerTimeout as error:
                return self._failure(OutcomeKind.TIMEOUT, error, started)
            except Exception as error:  # noqa: BLE001
                return self._failure(OutcomeKind.FAILED, error, started)

            runtime = time.monotonic() - started
            self.log.job_say(job, f"COMPLETED after {runtime:.4f}")
            return ExecutionResult(kind=OutcomeKind.SUCCESS, runtime_seconds=runtime)

    @staticmethod
    def _failure(kind: OutcomeKind, error: Exception, started: float) -> ExecutionResult:
        return ExecutionResult(
            kind=kind,
            runtime_seconds=time.monotonic() - started,
            error=error,
        )


def format_error(error: BaseException) -> str:
    """Message followed by the traceback, as stored in ``last_error``."""

    trace = "".join(traceback.format_tb(error.__traceback__)).rstrip()
    return f"{error}\n{trace}" if trace else str(error)


def call_with_timeout(fn: Callable[[], T], seconds: float) -> T:
    """Call ``fn`` and raise ``WorkerTimeout`` once ``seconds`` elapse.

    In the main thread on POSIX the call is interrupted with ``SIGALRM``.
    Elsewhere ``fn`` runs in a daemon thread that cannot be interrupted: on
    timeout the caller still waits for it to return, so the job stays locked
    and nothing else runs until it does.
    """

    if _alarm_available():
        return _call_with_alarm(fn, seconds)
    return _call_in_thread(fn, seconds)


def _alarm_available() -> bool:
    return hasattr(signal, "setitimer") and threading.current_thread() is threading.main_thread()


def _call_with_alarm(fn: Callable[[], T], seconds: float) -> T:
    def _on_alarm(signum: int, _: object | None) -> None:  # noqa: ARG001
        raise WorkerTimeout(seconds)

    previous = signal.signal(signal.SIGALRM, _on_alarm)
    signal.setitimer(signal.ITIMER_REAL, seconds)
    try:
        return fn()
    finally:
        signal.setitimer(signal.ITIMER_REAL, 0)
        signal.signal(signal.SIGALRM, previous)


def _call_in_thread(fn: Callable[[], T], seconds: float) -> T:
    outcome: dict[str, Any] = {}

    def _target() -> None:
        try:
            outcome["value"] = fn()
        except BaseException as error:  # noqa: BLE001
            outcome["error"] = error

    context = contextvars.copy_context()
    thread = threading.Thread(target=context.run, args=(_target,), daemon=True)
    thread.start()
    thread.join(seconds)
    if thread.is_alive():
        logger.warning(
            "Job thread %s exceeded %.1fs timeout; waiting for it to finish",
            thread.name,
            seconds,
        )
        thread.join()
        raise WorkerTimeout(seconds)
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]
