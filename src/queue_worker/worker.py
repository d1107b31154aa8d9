"""Worker loop: reserve, run and resolve jobs until stopped."""

from __future__ import annotations

import logging
import os
import signal
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime

from queue_worker.config import WorkerSettings
from queue_worker.contracts import Job, JobBackend
from queue_worker.errors import SignalAbort
from queue_worker.executor import JobExecutor
from queue_worker.lifecycle import Lifecycle, Plugin
from queue_worker.log_context import WorkerLog
from queue_worker.models import OutcomeKind, WorkerState, WorkStats
from queue_worker.plugins import ClearLocks
from queue_worker.reservation import ReservationClient, filters_from_settings
from queue_worker.retry import RetryPolicy

DEFAULT_BATCH_SIZE = 100
DEFAULT_PLUGINS: tuple[type[Plugin], ...] = (ClearLocks,)

logger = logging.getLogger(__name__)


class Worker:
    """Sequential job worker bound to one backend.

    The worker identity defaults to the process id. Give it a stable name
    that survives restarts to let it resume jobs still locked under that
    name after a crash.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: JobBackend,
        settings: WorkerSettings | None = None,
        plugins: Sequence[type[Plugin]] = DEFAULT_PLUGINS,
        lifecycle: Lifecycle | None = None,
        name: str | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self.settings = settings or WorkerSettings()
        self.backend = backend
        self.batch_size = batch_size
        self.lifecycle = lifecycle or Lifecycle()
        self.plugins = [plugin_class() for plugin_class in plugins]
        for plugin in self.plugins:
            plugin.setup(self.lifecycle)

        self._name = name or self.settings.worker_name
        self.log = WorkerLog(self.name, quiet=self.settings.quiet)
        self.reservation = ReservationClient(
            backend=backend,
            filters=filters_from_settings(self.settings),
            log=self.log,
        )
        self.executor = JobExecutor(
            lifecycle=self.lifecycle,
            log=self.log,
            max_run_time_seconds=self.settings.max_run_time_seconds,
        )
        self.retry_policy = RetryPolicy(
            settings=self.settings,
            lifecycle=self.lifecycle,
            log=self.log,
            owner=self,
        )
        self.state = WorkerState.IDLE
        self.last_stats: WorkStats | None = None
        self._stop_requested = False

    @property
    def name(self) -> str:
        if self._name:
            return self._name
        return f"{self.settings.name_prefix}{os.getpid()}"

    @name.setter
    def name(self, value: str | None) -> None:
        """Set the worker name; ``None`` restores the pid-based default."""

        self._name = value
        self.log.name = self.name

    @property
    def stopping(self) -> bool:
        return self._stop_requested

    def stop(self) -> None:
        self._stop_requested = True
        if self.state is not WorkerState.TERMINATED:
            self.state = WorkerState.STOPPING

    def start(self) -> None:
        """Run cycles until stopped, or until idle with ``exit_on_complete``."""

        self.lifecycle.freeze()
        with self._signal_handlers():
            self.log.say("Starting job worker")
            try:
                self.lifecycle.run_callbacks("execute", self, block=self._run_cycles)
            finally:
                self.state = WorkerState.TERMINATED

    def _run_cycles(self, _: Worker) -> None:
        while True:
            if not self._stop_requested:
                self.state = WorkerState.RUNNING
            stats = self.lifecycle.run_callbacks(
                "loop",
                self,
                block=lambda worker: worker.work_off(worker.batch_size),
            )
            self.last_stats = stats

            if stats.total == 0:
                if self.settings.exit_on_complete:
                    self.log.say("No more jobs available. Exiting")
                    break
                if not self._stop_requested:
                    self.state = WorkerState.IDLE
                    self._sleep_with_stop(self.settings.sleep_delay_seconds)
            else:
                self.log.say(
                    f"{stats.total} jobs processed at {stats.rate:.4f} j/s, {stats.failed} failed",
                )

            if self._stop_requested:
                break

    def work_off(self, num: int = DEFAULT_BATCH_SIZE) -> WorkStats:
        """Run up to ``num`` jobs; stop early when the queue is empty or on stop."""

        stats = WorkStats()
        started = time.monotonic()
        for _ in range(num):
            result = self.reserve_and_run_one_job()
            if result is None:
                break
            if result:
                stats.succeeded += 1
            else:
                stats.failed += 1
            if self._stop_requested:
                break
        stats.elapsed_seconds = time.monotonic() - started
        return stats

    def reserve_and_run_one_job(self) -> bool | None:
        """Reserve and run the next job. None means nothing could be reserved."""

        job = self.reservation.reserve(self.name)
        if job is None:
            return None
        return self.lifecycle.run_callbacks(
            "perform",
            self,
            job,
            block=lambda _, reserved: self.run(reserved),
        )

    def run(self, job: Job) -> bool:
        """Execute a reserved job and resolve its outcome. True means success."""

        result = self.executor.run(job)
        if result.succeeded:
            return True
        try:
            if result.kind is OutcomeKind.DESERIALIZATION_FAILED:
                self.retry_policy.fail_permanently(job)
            else:
                self.lifecycle.run_callbacks(
                    "error",
                    self,
                    job,
                    block=lambda _, failed: self.retry_policy.handle_failure(
                        failed,
                        result.error or RuntimeError(result.kind.value),
                    ),
                )
        except Exception:  # noqa: BLE001
            logger.exception("Could not record %s outcome for job %s", result.kind.value, job.id)
        return False

    def reschedule(self, job: Job, at: datetime | None = None) -> None:
        self.retry_policy.reschedule(job, at)

    def max_attempts(self, job: Job) -> int:
        return self.retry_policy.max_attempts(job)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._handle_signal(name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def _handle_signal(self, signal_name: str) -> None:
        self.log.say("Exiting...")
        self.stop()
        if self.settings.signal_policy.raises_on(signal_name):
            raise SignalAbort(signal_name)
