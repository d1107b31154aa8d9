"""Shared test fixtures: in-memory jobs and backends."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import pytest

from queue_worker.config import WorkerSettings
from queue_worker.models import ReserveFilters


@dataclass(eq=False)
class FakeJob:
    """Job double recording every operation the worker performs."""

    id: str
    name: str = "FakeJob"
    action: Callable[[], None] | None = None
    queue: str | None = None
    priority: int = 0
    run_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    attempts: int = 0
    max_attempts: int | None = None
    last_error: str | None = None
    failed_at: datetime | None = None
    correlation_id: str | None = None
    locked_by: str | None = None
    failure_hook_error: Exception | None = None
    destroyed: bool = False
    persist_count: int = 0
    invocations: int = 0
    hook_calls: list[str] = field(default_factory=list)

    def invoke_payload(self) -> None:
        self.invocations += 1
        if self.action is not None:
            self.action()

    def destroy(self) -> None:
        self.destroyed = True

    def unlock(self) -> None:
        self.locked_by = None

    def persist(self) -> None:
        self.persist_count += 1

    def run_hook(self, name: str) -> None:
        self.hook_calls.append(name)
        if self.failure_hook_error is not None:
            raise self.failure_hook_error

    def mark_failed(self) -> None:
        self.failed_at = datetime.now(tz=UTC)
        self.unlock()
        self.persist()

    def compute_reschedule_time(self) -> datetime:
        return datetime.now(tz=UTC) + timedelta(seconds=self.attempts**4 + 5)


class FakeBackend:
    """Backend double serving queued jobs and scripted reservation errors."""

    def __init__(self, jobs: list[FakeJob] | None = None) -> None:
        self.jobs: deque[FakeJob] = deque(jobs or [])
        self.errors: deque[Exception] = deque()
        self.reserve_calls = 0
        self.last_filters: ReserveFilters | None = None
        self.recovered: list[BaseException] = []
        self.cleared: list[str] = []
        self.before_fork_calls = 0
        self.after_fork_calls = 0
        self.recover_error: Exception | None = None
        self.clear_locks_error: Exception | None = None

    def reserve(self, worker_name: str, filters: ReserveFilters) -> FakeJob | None:
        self.reserve_calls += 1
        self.last_filters = filters
        if self.errors:
            raise self.errors.popleft()
        if not self.jobs:
            return None
        job = self.jobs.popleft()
        job.locked_by = worker_name
        return job

    def recover_from(self, error: BaseException) -> None:
        self.recovered.append(error)
        if self.recover_error is not None:
            raise self.recover_error

    def clear_locks(self, worker_name: str) -> None:
        self.cleared.append(worker_name)
        if self.clear_locks_error is not None:
            raise self.clear_locks_error

    def before_fork(self) -> None:
        self.before_fork_calls += 1

    def after_fork(self) -> None:
        self.after_fork_calls += 1


@pytest.fixture()
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def make_job() -> Callable[..., FakeJob]:
    counter = iter(range(1, 10_000))

    def _make(**kwargs: object) -> FakeJob:
        kwargs.setdefault("id", str(next(counter)))
        return FakeJob(**kwargs)  # type: ignore[arg-type]

    return _make


@pytest.fixture()
def settings() -> WorkerSettings:
    return WorkerSettings(sleep_delay_seconds=0.0, worker_name="test-worker")
