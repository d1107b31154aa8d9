"""Job reservation with a circuit breaker against a failing backend."""

from __future__ import annotations

import logging

from queue_worker.config import WorkerSettings
from queue_worker.contracts import Job, JobBackend
from queue_worker.errors import FatalBackendError
from queue_worker.log_context import WorkerLog
from queue_worker.models import ReserveFilters

RESERVE_FAILURE_LIMIT = 10

logger = logging.getLogger(__name__)


def filters_from_settings(settings: WorkerSettings) -> ReserveFilters:
    return ReserveFilters(
        min_priority=settings.min_priority,
        max_priority=settings.max_priority,
        queues=settings.queues,
        priority_queues=settings.priority_queues,
        ignore_priority_seconds=settings.ignore_priority_seconds,
        read_ahead=settings.read_ahead,
        max_run_time_seconds=settings.max_run_time_seconds,
    )


class ReservationClient:
    """Claims one job at a time on behalf of a worker identity."""

    def __init__(
        self,
        *,
        backend: JobBackend,
        filters: ReserveFilters,
        log: WorkerLog,
        failure_limit: int = RESERVE_FAILURE_LIMIT,
    ) -> None:
        self.backend = backend
        self.filters = filters
        self.log = log
        self.failure_limit = failure_limit
        self.failed_reserve_count = 0

    def reserve(self, worker_name: str) -> Job | None:
        """Return an exclusively locked job, or None when nothing is available.

        Backend errors are swallowed and counted; the ``failure_limit``-th
        consecutive error raises ``FatalBackendError``.
        """

        try:
            job = self.backend.reserve(worker_name, self.filters)
        except Exception as error:  # noqa: BLE001
            self._register_failure(error)
            return None
        self.failed_reserve_count = 0
        return job

    def _register_failure(self, error: Exception) -> None:
        self.log.say(f"Error while reserving job: {error}", logging.ERROR)
        try:
            self.backend.recover_from(error)
        except Exception:  # noqa: BLE001
            logger.exception("Backend recovery hook failed")
        self.failed_reserve_count += 1
        if self.failed_reserve_count >= self.failure_limit:
            raise FatalBackendError(
                f"{self.failed_reserve_count} consecutive reservation errors; "
                f"last error: {error}",
            ) from error
