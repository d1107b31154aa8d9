"""SQL job backend implementations."""

from queue_worker.backend.sql import SqlJob, SqlJobBackend

__all__ = ["SqlJob", "SqlJobBackend"]
