"""Job queue backend backed by SQLModel + SQLite."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import case, or_
from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from queue_worker.backend.alembic_runner import upgrade_head
from queue_worker.backend.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from queue_worker.backend.tables import JobRecord
from queue_worker.config import WorkerSettings
from queue_worker.errors import DeserializationError
from queue_worker.models import ReserveFilters
from queue_worker.payload import HandlerRegistry, Payload, PayloadCodec, default_registry

logger = logging.getLogger(__name__)


@dataclass(slots=True, eq=False)
class SqlJob:
    """A job row plus the operations the worker performs on it."""

    backend: SqlJobBackend = field(repr=False)
    id: str
    name: str
    payload: str
    queue: str | None = None
    priority: int = 0
    run_at: datetime = field(default_factory=utc_now)
    attempts: int = 0
    max_attempts_override: int | None = None
    correlation_id: str | None = None
    locked_by: str | None = None
    locked_at: datetime | None = None
    failed_at: datetime | None = None
    last_error: str | None = None
    _decoded: Payload | None = field(default=None, repr=False)

    @property
    def max_attempts(self) -> int | None:
        """Row override, else the handler's limit when the payload decodes."""

        if self.max_attempts_override is not None:
            return self.max_attempts_override
        try:
            return self.payload_object().handler.max_attempts
        except DeserializationError:
            return None

    @property
    def failed(self) -> bool:
        return self.failed_at is not None

    def payload_object(self) -> Payload:
        if self._decoded is None:
            self._decoded = self.backend.codec.decode(self.payload)
        return self._decoded

    def invoke_payload(self) -> None:
        self.payload_object().perform()

    def run_hook(self, name: str) -> None:
        self.payload_object().run_hook(name)

    def destroy(self) -> None:
        self.backend.delete_job(self.id)

    def unlock(self) -> None:
        self.locked_by = None
        self.locked_at = None

    def persist(self) -> None:
        self.backend.save_job(self)

    def mark_failed(self) -> None:
        self.failed_at = utc_now()
        self.unlock()
        self.persist()

    def compute_reschedule_time(self) -> datetime:
        """Exponential backoff: ``attempts ** 4 + 5`` seconds, exponent capped."""

        now = utc_now()
        try:
            custom = self.payload_object().handler.reschedule_at
        except DeserializationError:
            custom = None
        if custom is not None:
            return custom(now, self.attempts)
        exponent = min(self.attempts, self.backend.settings.max_reschedule)
        return now + timedelta(seconds=exponent**4 + 5)


class SqlJobBackend:
    """Queue persistence facade implementing the worker backend contract."""

    def __init__(
        self,
        db_path: Path,
        *,
        settings: WorkerSettings | None = None,
        registry: HandlerRegistry | None = None,
    ) -> None:
        self.db_path = db_path
        self.settings = settings or WorkerSettings(db_path=db_path)
        self.codec = PayloadCodec(registry or default_registry())
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=self.settings.sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue(  # noqa: PLR0913
        self,
        handler: str,
        args: dict[str, Any] | None = None,
        *,
        name: str | None = None,
        priority: int | None = None,
        queue: str | None = None,
        run_at: datetime | None = None,
        max_attempts: int | None = None,
        correlation_id: str | None = None,
    ) -> SqlJob:
        """Persist a job, or run it inline when ``delay_jobs`` is off."""

        now = utc_now()
        job = SqlJob(
            backend=self,
            id=str(uuid4()),
            name=name or handler,
            payload=self.codec.encode(handler, args),
            queue=queue or self.settings.default_queue_name,
            priority=self.settings.default_priority if priority is None else priority,
            run_at=run_at or now,
            max_attempts_override=max_attempts,
            correlation_id=correlation_id,
        )
        if not self.settings.delay_jobs:
            job.invoke_payload()
            return job

        with Session(self.engine) as session:
            session.add(
                JobRecord(
                    id=job.id,
                    name=job.name,
                    queue=job.queue,
                    priority=job.priority,
                    payload=job.payload,
                    correlation_id=job.correlation_id,
                    attempts=0,
                    max_attempts=job.max_attempts_override,
                    run_at=to_db_datetime(job.run_at),
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()
        return job

    def reserve(self, worker_name: str, filters: ReserveFilters) -> SqlJob | None:
        """Atomically lock one ready job for ``worker_name``.

        Up to ``filters.read_ahead`` candidates are fetched and tried in
        order; a candidate taken by another worker in between is skipped.
        """

        now = utc_now()
        lock_condition = self._lockable(worker_name, now=now, filters=filters)
        with Session(self.engine) as session:
            query = select(JobRecord).where(
                col(JobRecord.run_at) <= to_db_datetime(now),
                col(JobRecord.failed_at).is_(None),
                lock_condition,
            )
            if filters.min_priority is not None:
                query = query.where(col(JobRecord.priority) >= filters.min_priority)
            if filters.max_priority is not None:
                query = query.where(col(JobRecord.priority) <= filters.max_priority)
            allowed_queues = (*filters.priority_queues, *filters.queues)
            if allowed_queues:
                query = query.where(col(JobRecord.queue).in_(allowed_queues))
            candidates = session.exec(
                query.order_by(*_ordering(now=now, filters=filters)).limit(
                    max(1, filters.read_ahead),
                ),
            ).all()

            for candidate in candidates:
                result = session.exec(
                    sa_update(JobRecord)
                    .where(
                        col(JobRecord.id) == candidate.id,
                        col(JobRecord.failed_at).is_(None),
                        lock_condition,
                    )
                    .values(
                        locked_by=worker_name,
                        locked_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                session.commit()
                claimed = session.exec(
                    select(JobRecord).where(JobRecord.id == candidate.id),
                ).one()
                return self._to_job(claimed)
            session.rollback()
        return None

    def recover_from(self, error: BaseException) -> None:
        """Drop pooled connections so the next reservation reconnects."""

        logger.warning("Recovering SQL backend after reservation error: %s", error)
        self.engine.dispose()

    def clear_locks(self, worker_name: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(JobRecord)
                .where(col(JobRecord.locked_by) == worker_name)
                .values(locked_by=None, locked_at=None, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()

    def before_fork(self) -> None:
        self.engine.dispose()

    def after_fork(self) -> None:
        self.engine.dispose(close=False)

    def save_job(self, job: SqlJob) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(JobRecord)
                .where(col(JobRecord.id) == job.id)
                .values(
                    name=job.name,
                    queue=job.queue,
                    priority=job.priority,
                    run_at=to_db_datetime(job.run_at),
                    attempts=job.attempts,
                    max_attempts=job.max_attempts_override,
                    locked_by=job.locked_by,
                    locked_at=_optional_db_datetime(job.locked_at),
                    failed_at=_optional_db_datetime(job.failed_at),
                    last_error=job.last_error,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def delete_job(self, job_id: str) -> None:
        with Session(self.engine) as session:
            session.exec(sa_delete(JobRecord).where(col(JobRecord.id) == job_id))
            session.commit()

    def get_job(self, job_id: str) -> SqlJob | None:
        with Session(self.engine) as session:
            row = session.exec(select(JobRecord).where(JobRecord.id == job_id)).one_or_none()
            return self._to_job(row) if row is not None else None

    def list_jobs(self, *, failed: bool | None = None, limit: int = 50) -> list[SqlJob]:
        with Session(self.engine) as session:
            query = select(JobRecord)
            if failed is True:
                query = query.where(col(JobRecord.failed_at).is_not(None))
            elif failed is False:
                query = query.where(col(JobRecord.failed_at).is_(None))
            query = query.order_by(col(JobRecord.run_at).asc(), col(JobRecord.created_at).asc())
            rows = session.exec(query.limit(limit)).all()
            return [self._to_job(row) for row in rows]

    def count_jobs(self) -> dict[str, int]:
        """Job counts by state: ``pending``, ``locked`` and ``failed``."""

        with Session(self.engine) as session:
            failed = session.exec(
                select(func.count())
                .select_from(JobRecord)
                .where(col(JobRecord.failed_at).is_not(None)),
            ).one()
            locked = session.exec(
                select(func.count())
                .select_from(JobRecord)
                .where(
                    col(JobRecord.failed_at).is_(None),
                    col(JobRecord.locked_by).is_not(None),
                ),
            ).one()
            total = session.exec(select(func.count()).select_from(JobRecord)).one()
        return {"pending": total - failed - locked, "locked": locked, "failed": failed}

    def _lockable(self, worker_name: str, *, now: datetime, filters: ReserveFilters) -> Any:
        expired_before = now - timedelta(seconds=filters.max_run_time_seconds)
        return or_(
            col(JobRecord.locked_at).is_(None),
            col(JobRecord.locked_at) < to_db_datetime(expired_before),
            col(JobRecord.locked_by) == worker_name,
        )

    def _to_job(self, row: JobRecord) -> SqlJob:
        return SqlJob(
            backend=self,
            id=row.id,
            name=row.name,
            payload=row.payload,
            queue=row.queue,
            priority=row.priority,
            run_at=to_utc_aware_datetime(row.run_at),
            attempts=row.attempts,
            max_attempts_override=row.max_attempts,
            correlation_id=row.correlation_id,
            locked_by=row.locked_by,
            locked_at=_optional_utc(row.locked_at),
            failed_at=_optional_utc(row.failed_at),
            last_error=row.last_error,
        )


def _ordering(*, now: datetime, filters: ReserveFilters) -> list[Any]:
    """Priority queues first, then stale jobs by age, then priority and age."""

    ordering: list[Any] = []
    if filters.priority_queues:
        ordering.append(
            case(
                *(
                    (col(JobRecord.queue) == name, index)
                    for index, name in enumerate(filters.priority_queues)
                ),
                else_=len(filters.priority_queues),
            ),
        )
    if filters.ignore_priority_seconds > 0:
        stale_before = to_db_datetime(now - timedelta(seconds=filters.ignore_priority_seconds))
        is_stale = col(JobRecord.run_at) <= stale_before
        ordering.append(case((is_stale, 0), else_=1))
        ordering.append(case((is_stale, col(JobRecord.run_at)), else_=None))
    ordering.extend(
        [
            col(JobRecord.priority).asc(),
            col(JobRecord.run_at).asc(),
            col(JobRecord.created_at).asc(),
        ],
    )
    return ordering


def _optional_db_datetime(value: datetime | None) -> datetime | None:
    return to_db_datetime(value) if value is not None else None


def _optional_utc(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None
