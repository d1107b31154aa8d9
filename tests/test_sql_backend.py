from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from queue_worker.backend import SqlJobBackend
from queue_worker.backend.common import utc_now
from queue_worker.config import WorkerSettings
from queue_worker.payload import HandlerRegistry
from queue_worker.reservation import filters_from_settings
from queue_worker.worker import Worker

pytestmark = [
    allure.epic("Job Storage"),
    allure.feature("SQL Backend"),
]


class _Calls:
    def __init__(self) -> None:
        self.performed: list[dict[str, object]] = []
        self.failures: list[dict[str, object]] = []


@pytest.fixture()
def calls() -> _Calls:
    return _Calls()


@pytest.fixture()
def registry(calls: _Calls) -> HandlerRegistry:
    registry = HandlerRegistry()
    registry.register("ok", calls.performed.append)

    def _fail(args: dict[str, object]) -> None:
        raise RuntimeError(f"failed with {args}")

    registry.register("fail", _fail, on_failure=calls.failures.append)
    registry.register(
        "custom_backoff",
        _fail,
        reschedule_at=lambda now, attempts: now + timedelta(days=attempts),
    )
    return registry


@pytest.fixture()
def queue_settings(tmp_path: Path) -> WorkerSettings:
    return WorkerSettings(
        db_path=tmp_path / "queue.db",
        sleep_delay_seconds=0.0,
        worker_name="w1",
        exit_on_complete=True,
    )


@pytest.fixture()
def backend(queue_settings: WorkerSettings, registry: HandlerRegistry):
    backend = SqlJobBackend(queue_settings.db_path, settings=queue_settings, registry=registry)
    backend.init_schema()
    yield backend
    backend.close()


def test_reservation_is_exclusive_until_lock_expires(backend, queue_settings) -> None:
    filters = filters_from_settings(queue_settings)
    job = backend.enqueue("ok", {"n": 1})

    reserved = backend.reserve("w1", filters)
    assert reserved is not None
    assert reserved.id == job.id
    assert reserved.locked_by == "w1"
    assert reserved.locked_at is not None

    assert backend.reserve("w2", filters) is None
    resumed = backend.reserve("w1", filters)
    assert resumed is not None
    assert resumed.id == job.id

    resumed.locked_at = utc_now() - timedelta(hours=5)
    backend.save_job(resumed)
    reclaimed = backend.reserve("w2", filters)
    assert reclaimed is not None
    assert reclaimed.locked_by == "w2"


def test_two_backends_never_claim_the_same_job(backend, queue_settings, registry) -> None:
    other = SqlJobBackend(queue_settings.db_path, settings=queue_settings, registry=registry)
    filters = filters_from_settings(queue_settings)
    backend.enqueue("ok")
    backend.enqueue("ok")
    try:
        first = backend.reserve("w1", filters)
        second = other.reserve("w2", filters)
        third = other.reserve("w3", filters)
    finally:
        other.close()

    assert first is not None
    assert second is not None
    assert first.id != second.id
    assert third is None


def test_reservation_orders_by_priority_then_run_at(backend, queue_settings) -> None:
    filters = replace(filters_from_settings(queue_settings), ignore_priority_seconds=0)
    now = utc_now()
    late_high = backend.enqueue("ok", name="late-high", priority=1, run_at=now)
    early_low = backend.enqueue(
        "ok",
        name="early-low",
        priority=10,
        run_at=now - timedelta(minutes=1),
    )
    early_high = backend.enqueue(
        "ok",
        name="early-high",
        priority=1,
        run_at=now - timedelta(minutes=2),
    )

    order = [backend.reserve(f"w{index}", filters).id for index in range(3)]

    assert order == [early_high.id, late_high.id, early_low.id]


def test_stale_jobs_ignore_priority(backend, queue_settings) -> None:
    filters = filters_from_settings(queue_settings)
    now = utc_now()
    backend.enqueue("ok", name="fresh-urgent", priority=0, run_at=now)
    stale = backend.enqueue(
        "ok",
        name="stale-low",
        priority=50,
        run_at=now - timedelta(hours=1),
    )

    first = backend.reserve("w1", filters)

    assert first is not None
    assert first.id == stale.id


def test_priority_bounds_filter_reservations(backend, queue_settings) -> None:
    filters = replace(filters_from_settings(queue_settings), min_priority=5, max_priority=9)
    backend.enqueue("ok", priority=1)
    backend.enqueue("ok", priority=20)
    inside = backend.enqueue("ok", priority=7)

    reserved = backend.reserve("w1", filters)

    assert reserved is not None
    assert reserved.id == inside.id
    assert backend.reserve("w2", filters) is None


def test_queue_filters_and_priority_queues(backend, queue_settings) -> None:
    filters = replace(
        filters_from_settings(queue_settings),
        queues=("mail",),
        priority_queues=("urgent",),
    )
    now = utc_now()
    backend.enqueue("ok", queue="reports", run_at=now - timedelta(minutes=5))
    mail = backend.enqueue("ok", queue="mail", priority=0, run_at=now - timedelta(minutes=2))
    urgent = backend.enqueue("ok", queue="urgent", priority=9, run_at=now)

    first = backend.reserve("w1", filters)
    second = backend.reserve("w2", filters)

    assert first is not None
    assert second is not None
    assert (first.id, second.id) == (urgent.id, mail.id)
    assert backend.reserve("w3", filters) is None


def test_future_and_failed_jobs_are_not_reserved(backend, queue_settings) -> None:
    filters = filters_from_settings(queue_settings)
    backend.enqueue("ok", run_at=utc_now() + timedelta(hours=1))
    failed = backend.enqueue("ok")
    failed.mark_failed()

    assert backend.reserve("w1", filters) is None


def test_clear_locks_releases_only_own_locks(backend, queue_settings) -> None:
    filters = filters_from_settings(queue_settings)
    backend.enqueue("ok")
    backend.enqueue("ok")
    mine = backend.reserve("w1", filters)
    theirs = backend.reserve("w2", filters)

    backend.clear_locks("w1")

    assert backend.get_job(mine.id).locked_by is None
    assert backend.get_job(theirs.id).locked_by == "w2"
    assert backend.count_jobs() == {"pending": 1, "locked": 1, "failed": 0}


def test_worker_runs_successful_job_and_deletes_it(backend, queue_settings, calls) -> None:
    job = backend.enqueue("ok", {"value": 42}, correlation_id="req-9")

    Worker(backend=backend, settings=queue_settings).start()

    assert calls.performed == [{"value": 42}]
    assert backend.get_job(job.id) is None


def test_worker_reschedules_failed_job_with_backoff(backend, queue_settings) -> None:
    job = backend.enqueue("fail", {"n": 1})
    started = datetime.now(tz=UTC)

    Worker(backend=backend, settings=queue_settings).start()

    stored = backend.get_job(job.id)
    assert stored is not None
    assert stored.attempts == 1
    assert stored.locked_by is None
    assert stored.failed_at is None
    assert stored.run_at >= started + timedelta(seconds=6)
    assert "failed with {'n': 1}" in (stored.last_error or "")


def test_exhausted_job_is_kept_as_failed_when_configured(backend, queue_settings, calls) -> None:
    settings = replace(queue_settings, max_attempts=1, destroy_failed_jobs=False)
    job = backend.enqueue("fail", {"n": 2})

    Worker(backend=backend, settings=settings).start()

    stored = backend.get_job(job.id)
    assert stored is not None
    assert stored.failed_at is not None
    assert stored.locked_by is None
    assert stored.attempts == 1
    assert stored.last_error is not None
    assert calls.failures == [{"n": 2}]
    assert [failed.id for failed in backend.list_jobs(failed=True)] == [job.id]
    assert backend.count_jobs()["failed"] == 1


def test_exhausted_job_is_deleted_by_default(backend, queue_settings, calls) -> None:
    job = backend.enqueue("fail", max_attempts=1)

    Worker(backend=backend, settings=queue_settings).start()

    assert backend.get_job(job.id) is None
    assert calls.failures == [{}]


def test_undecodable_payload_fails_permanently(backend, queue_settings) -> None:
    job = backend.enqueue("ok")
    blind = SqlJobBackend(
        queue_settings.db_path,
        settings=replace(queue_settings, destroy_failed_jobs=False),
        registry=HandlerRegistry(),
    )
    try:
        Worker(backend=blind, settings=blind.settings).start()
    finally:
        blind.close()

    stored = backend.get_job(job.id)
    assert stored is not None
    assert stored.attempts == 0
    assert stored.failed_at is not None
    assert "unknown handler" in (stored.last_error or "")


def test_reschedule_time_exponent_is_capped(backend) -> None:
    job = backend.enqueue("ok")
    job.attempts = 50

    delay = (job.compute_reschedule_time() - utc_now()).total_seconds()

    assert 10_000 <= delay <= 10_010


def test_handler_can_override_reschedule_time(backend) -> None:
    job = backend.enqueue("custom_backoff")
    job.attempts = 3

    delay = job.compute_reschedule_time() - utc_now()

    assert timedelta(days=2, hours=23) < delay <= timedelta(days=3)


def test_disabled_delay_jobs_runs_payload_inline(queue_settings, registry, calls) -> None:
    settings = replace(queue_settings, delay_jobs=False)
    inline = SqlJobBackend(settings.db_path, settings=settings, registry=registry)
    inline.init_schema()
    try:
        inline.enqueue("ok", {"inline": True})
        assert inline.list_jobs() == []
    finally:
        inline.close()

    assert calls.performed == [{"inline": True}]


def test_enqueue_applies_default_priority_and_queue(queue_settings, registry) -> None:
    settings = replace(queue_settings, default_priority=7, default_queue_name="general")
    configured = SqlJobBackend(settings.db_path, settings=settings, registry=registry)
    configured.init_schema()
    try:
        job = configured.enqueue("ok")
        stored = configured.get_job(job.id)
    finally:
        configured.close()

    assert stored is not None
    assert stored.priority == 7
    assert stored.queue == "general"
    assert stored.max_attempts is None


def test_recover_from_keeps_backend_usable(backend, queue_settings) -> None:
    backend.recover_from(RuntimeError("disk I/O error"))
    backend.enqueue("ok")

    assert backend.reserve("w1", filters_from_settings(queue_settings)) is not None
