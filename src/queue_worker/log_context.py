"""Per-job correlation id for tagged log lines."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

_correlation_id: ContextVar[str | None] = ContextVar("queue_worker_correlation_id", default=None)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s"


def current_correlation_id() -> str | None:
    return _correlation_id.get()


@contextmanager
def bind_correlation_id(value: str | None) -> Iterator[None]:
    """Bind ``value`` for the duration of the block; always reset on exit."""

    token = _correlation_id.set(value or None)
    try:
        yield
    finally:
        _correlation_id.reset(token)


class CorrelationIdFilter(logging.Filter):
    """Expose the bound correlation id as ``record.correlation_id``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _correlation_id.get() or "-"
        return True


def configure_logging(level: str = "INFO") -> None:
    """Install a stream handler that tags lines with the correlation id."""

    handler = logging.StreamHandler()
    handler.addFilter(CorrelationIdFilter())
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, handlers=[handler])


class WorkerLog:
    """Writes ``(worker name) text`` lines; echoes to stdout unless quiet."""

    def __init__(
        self,
        name: str,
        *,
        quiet: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.quiet = quiet
        self.logger = logger or logging.getLogger("queue_worker.worker")

    def say(self, text: str, level: int = logging.INFO) -> None:
        line = f"({self.name}) {text}"
        if not self.quiet:
            print(line, flush=True)  # noqa: T201
        self.logger.log(level, line)

    def job_say(self, job: object, text: str, level: int = logging.INFO) -> None:
        name = getattr(job, "name", "<unknown>")
        job_id = getattr(job, "id", "<unknown>")
        self.say(f"Job {name} (id={job_id}) {text}", level)
