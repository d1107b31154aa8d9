"""Interfaces the worker core requires from jobs, backends and plugins."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from queue_worker.lifecycle import Lifecycle
    from queue_worker.models import ReserveFilters


class Job(Protocol):
    """A reserved job as seen by the worker.

    Backends own the record; the worker only mutates it through these
    operations while it holds the lock.
    """

    id: str
    name: str
    queue: str | None
    priority: int
    run_at: datetime
    attempts: int
    max_attempts: int | None
    last_error: str | None
    failed_at: datetime | None
    correlation_id: str | None

    def invoke_payload(self) -> None:
        """Run job logic. May raise DeserializationError or ResubmitJob."""

    def destroy(self) -> None:
        """Delete the job record."""

    def unlock(self) -> None:
        """Release the lock held on the job."""

    def persist(self) -> None:
        """Write current attributes back to storage."""

    def run_hook(self, name: str) -> None:
        """Invoke a payload-level hook such as ``failure``."""

    def mark_failed(self) -> None:
        """Set ``failed_at`` and persist, keeping the record for inspection."""

    def compute_reschedule_time(self) -> datetime:
        """Next ``run_at`` after a failure, based on ``attempts``."""


class JobBackend(Protocol):
    """Storage engine providing exclusive reservation."""

    def reserve(self, worker_name: str, filters: ReserveFilters) -> Job | None:
        """Lock and return one eligible job for ``worker_name`` or None."""

    def recover_from(self, error: BaseException) -> None:
        """Advisory hook called after a reservation error."""

    def clear_locks(self, worker_name: str) -> None:
        """Release every lock held by ``worker_name``."""

    def before_fork(self) -> None:
        """Prepare for process duplication."""

    def after_fork(self) -> None:
        """Re-establish state in the child after duplication."""


class Plugin(Protocol):
    """Constructible with no arguments; registers lifecycle callbacks."""

    def setup(self, lifecycle: Lifecycle) -> None:
        """Attach callbacks to the worker lifecycle."""
