"""Controllers for queue-worker CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import timedelta
from pathlib import Path

from queue_worker.backend import SqlJobBackend
from queue_worker.backend.common import utc_now
from queue_worker.config import SignalPolicy, WorkerSettings
from queue_worker.worker import Worker


@dataclass(slots=True)
class WorkCommand:
    """CLI input for running a worker."""

    db_path: Path | None
    name: str | None = None
    queues: tuple[str, ...] = ()
    min_priority: int | None = None
    max_priority: int | None = None
    sleep_delay_seconds: float | None = None
    read_ahead: int | None = None
    exit_on_complete: bool = False
    signal_policy: str | None = None
    quiet: bool = True


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for enqueuing a job."""

    db_path: Path | None
    handler: str
    args_json: str
    name: str | None = None
    priority: int | None = None
    queue: str | None = None
    delay_seconds: int = 0
    max_attempts: int | None = None
    correlation_id: str | None = None


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    failed_only: bool
    limit: int


class QueueWorkerCliController:
    """Executes queue-worker commands and returns printable lines."""

    def run_worker(self, command: WorkCommand) -> list[str]:
        settings = _apply_overrides(WorkerSettings.from_env(db_path=command.db_path), command)
        settings.validate()
        with _backend(settings) as backend:
            worker = Worker(backend=backend, settings=settings, name=command.name)
            worker.start()
            stats = worker.last_stats

        last_cycle = (
            f"last_cycle succeeded={stats.succeeded} failed={stats.failed}"
            if stats is not None
            else "last_cycle none"
        )
        return [f"Worker {worker.name} stopped: {last_cycle}"]

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        settings = WorkerSettings.from_env(db_path=command.db_path)
        try:
            args = json.loads(command.args_json) if command.args_json else {}
        except json.JSONDecodeError as error:
            raise ValueError(f"--args must be a JSON object: {error}") from error
        if not isinstance(args, dict):
            raise ValueError("--args must be a JSON object.")

        with _backend(settings) as backend:
            job = backend.enqueue(
                command.handler,
                args,
                name=command.name,
                priority=command.priority,
                queue=command.queue,
                run_at=utc_now() + timedelta(seconds=max(0, command.delay_seconds)),
                max_attempts=command.max_attempts,
                correlation_id=command.correlation_id,
            )
        if not settings.delay_jobs:
            return [f"Job {job.name} ran inline (delay_jobs disabled)"]
        return [
            f"Enqueued job {job.id} name={job.name} queue={job.queue or '-'} "
            f"priority={job.priority} run_at={job.run_at.isoformat()}",
        ]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = WorkerSettings.from_env(db_path=command.db_path)
        with _backend(settings) as backend:
            counts = backend.count_jobs()
            jobs = backend.list_jobs(
                failed=True if command.failed_only else None,
                limit=command.limit,
            )

        lines = [
            f"Jobs: pending={counts['pending']} locked={counts['locked']} "
            f"failed={counts['failed']}",
        ]
        for job in jobs:
            state = "failed" if job.failed else ("locked" if job.locked_by else "pending")
            lines.append(
                f"- {job.id} {job.name} state={state} queue={job.queue or '-'} "
                f"priority={job.priority} attempts={job.attempts} "
                f"run_at={job.run_at.isoformat()}",
            )
            if job.failed and job.last_error:
                lines.append(f"  last_error: {job.last_error.splitlines()[0]}")
        return lines


def _apply_overrides(settings: WorkerSettings, command: WorkCommand) -> WorkerSettings:
    overrides: dict[str, object] = {"quiet": command.quiet}
    if command.queues:
        overrides["queues"] = command.queues
    if command.min_priority is not None:
        overrides["min_priority"] = command.min_priority
    if command.max_priority is not None:
        overrides["max_priority"] = command.max_priority
    if command.sleep_delay_seconds is not None:
        overrides["sleep_delay_seconds"] = command.sleep_delay_seconds
    if command.read_ahead is not None:
        overrides["read_ahead"] = command.read_ahead
    if command.exit_on_complete:
        overrides["exit_on_complete"] = True
    if command.signal_policy is not None:
        overrides["signal_policy"] = SignalPolicy(command.signal_policy)
    return replace(settings, **overrides)


@contextmanager
def _backend(settings: WorkerSettings) -> Iterator[SqlJobBackend]:
    backend = SqlJobBackend(settings.db_path, settings=settings)
    backend.init_schema()
    try:
        yield backend
    finally:
        backend.close()
