"""Reschedule-or-fail decisions for jobs that did not complete."""

from __future__ import annotations

import logging
from datetime import datetime

from queue_worker.config import WorkerSettings
from queue_worker.contracts import Job
from queue_worker.executor import format_error
from queue_worker.lifecycle import Lifecycle
from queue_worker.log_context import WorkerLog


class RetryPolicy:
    """Applies the attempt limit and the permanent-failure disposition."""

    def __init__(
        self,
        *,
        settings: WorkerSettings,
        lifecycle: Lifecycle,
        log: WorkerLog,
        owner: object,
    ) -> None:
        self.settings = settings
        self.lifecycle = lifecycle
        self.log = log
        self.owner = owner

    def max_attempts(self, job: Job) -> int:
        return job.max_attempts or self.settings.max_attempts

    def handle_failure(self, job: Job, error: BaseException) -> None:
        """Record the error on the job and reschedule it."""

        job.last_error = format_error(error)
        self.log.job_say(
            job,
            f"FAILED ({job.attempts} prior attempts) with {type(error).__name__}: {error}",
            logging.ERROR,
        )
        self.reschedule(job)

    def reschedule(self, job: Job, at: datetime | None = None) -> None:
        """Push the job back with backoff, or fail it once attempts run out."""

        job.attempts += 1
        if job.attempts < self.max_attempts(job):
            job.run_at = at or job.compute_reschedule_time()
            job.unlock()
            job.persist()
            return

        self.log.job_say(
            job,
            f"REMOVED permanently because of {job.attempts} consecutive failures",
            logging.ERROR,
        )
        self.fail_permanently(job)

    def fail_permanently(self, job: Job) -> None:
        self.lifecycle.run_callbacks("failure", self.owner, job, block=self._dispose)

    def _dispose(self, owner: object, job: Job) -> None:  # noqa: ARG002
        try:
            job.run_hook("failure")
        except Exception as error:  # noqa: BLE001
            self.log.say(f"Error when running failure callback: {error}", logging.ERROR)
            self.log.say(format_error(error), logging.ERROR)
        finally:
            if self.settings.destroy_failed_jobs:
                job.destroy()
            else:
                job.mark_failed()
