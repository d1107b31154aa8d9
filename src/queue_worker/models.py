"""Value types exchanged between worker components."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class OutcomeKind(str, Enum):
    """Classification of one job execution."""

    SUCCESS = "success"
    RESUBMITTED = "resubmitted"
    DESERIALIZATION_FAILED = "deserialization_failed"
    TIMEOUT = "timeout"
    FAILED = "failed"

    @property
    def retryable(self) -> bool:
        return self in {OutcomeKind.TIMEOUT, OutcomeKind.FAILED}


class WorkerState(str, Enum):
    """Worker loop states."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    TERMINATED = "terminated"


@dataclass(slots=True, frozen=True)
class ExecutionResult:
    """Executor output: outcome kind plus the error that caused it, if any."""

    kind: OutcomeKind
    runtime_seconds: float = 0.0
    error: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return self.kind in {OutcomeKind.SUCCESS, OutcomeKind.RESUBMITTED}


@dataclass(slots=True, frozen=True)
class ReserveFilters:
    """Selection constraints passed to the backend on every reservation."""

    min_priority: int | None = None
    max_priority: int | None = None
    queues: tuple[str, ...] = ()
    priority_queues: tuple[str, ...] = ()
    ignore_priority_seconds: float = 0.0
    read_ahead: int = 1
    max_run_time_seconds: float = 0.0


@dataclass(slots=True)
class WorkStats:
    """Counters for one ``work_off`` cycle."""

    succeeded: int = 0
    failed: int = 0
    elapsed_seconds: float = 0.0

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    @property
    def rate(self) -> float:
        """Jobs per second over the cycle."""

        if self.elapsed_seconds <= 0:
            return float(self.total)
        return self.total / self.elapsed_seconds
