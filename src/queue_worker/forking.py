"""Hooks a forking host calls around process duplication."""

from __future__ import annotations

import logging
import os
import sys
from typing import IO, Any

from queue_worker.contracts import JobBackend

logger = logging.getLogger(__name__)


class ForkCoordinator:
    """Reopens log files and lets the backend reset its connections.

    ``before_fork`` snapshots the writable files behind logging handlers and
    the standard streams the first time it runs; ``after_fork`` reopens each
    of them in append mode in the child.
    """

    def __init__(self, backend: JobBackend) -> None:
        self.backend = backend
        self._files_to_reopen: list[IO[Any]] | None = None

    @property
    def supported(self) -> bool:
        return hasattr(os, "fork")

    def before_fork(self) -> None:
        if self._files_to_reopen is None:
            self._files_to_reopen = _open_files() if self.supported else []
        self.backend.before_fork()

    def after_fork(self) -> None:
        for stream in self._files_to_reopen or []:
            _reopen(stream)
        self.backend.after_fork()


def _open_files() -> list[IO[Any]]:
    streams: list[IO[Any]] = []
    loggers = [logging.getLogger()] + [
        item
        for item in logging.Logger.manager.loggerDict.values()
        if isinstance(item, logging.Logger)
    ]
    for item in loggers:
        for handler in item.handlers:
            stream = getattr(handler, "stream", None)
            if _is_reopenable(stream) and stream not in streams:
                streams.append(stream)
    for stream in (sys.stdout, sys.stderr):
        if _is_reopenable(stream) and stream not in streams:
            streams.append(stream)
    return streams


def _is_reopenable(stream: object) -> bool:
    if stream is None or getattr(stream, "closed", True):
        return False
    name = getattr(stream, "name", None)
    if not isinstance(name, str):
        return False
    return os.path.isfile(name)


def _reopen(stream: IO[Any]) -> None:
    """Point ``stream``'s descriptor at a fresh append-mode handle on its path."""

    try:
        stream.flush()
        fresh = open(stream.name, "a+", buffering=1, encoding="utf-8")  # noqa: SIM115
        try:
            os.dup2(fresh.fileno(), stream.fileno())
        finally:
            fresh.close()
        if hasattr(stream, "reconfigure"):
            stream.reconfigure(line_buffering=True)
    except (OSError, ValueError):
        logger.debug("Skipping file that failed to reopen: %r", getattr(stream, "name", stream))
