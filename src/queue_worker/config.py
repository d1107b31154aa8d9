"""Runtime configuration for the job worker."""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

DEFAULT_SLEEP_DELAY_SECONDS = 5.0
DEFAULT_MAX_ATTEMPTS = 25
DEFAULT_MAX_RUN_TIME_SECONDS = 4 * 60 * 60
DEFAULT_DEFAULT_PRIORITY = 0
DEFAULT_DELAY_JOBS = True
DEFAULT_IGNORE_PRIORITY_SECONDS = 20 * 60
DEFAULT_READ_AHEAD = 5
DEFAULT_MAX_RESCHEDULE = 10


class SignalPolicy(str, Enum):
    """Whether INT/TERM abort the current job instead of draining it."""

    NONE = "none"
    TERM_ONLY = "term"
    BOTH = "both"

    def raises_on(self, signal_name: str) -> bool:
        if self is SignalPolicy.BOTH:
            return signal_name in {"SIGTERM", "SIGINT"}
        if self is SignalPolicy.TERM_ONLY:
            return signal_name == "SIGTERM"
        return False


@dataclass(slots=True, frozen=True)
class WorkerSettings:
    """Worker tunables, fixed once the composition root builds them."""

    min_priority: int | None = None
    max_priority: int | None = None
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    max_run_time_seconds: float = DEFAULT_MAX_RUN_TIME_SECONDS
    default_priority: int = DEFAULT_DEFAULT_PRIORITY
    delay_jobs: bool = DEFAULT_DELAY_JOBS
    queues: tuple[str, ...] = ()
    priority_queues: tuple[str, ...] = ()
    default_queue_name: str | None = None
    ignore_priority_seconds: float = DEFAULT_IGNORE_PRIORITY_SECONDS
    read_ahead: int = DEFAULT_READ_AHEAD
    max_reschedule: int = DEFAULT_MAX_RESCHEDULE
    sleep_delay_seconds: float = DEFAULT_SLEEP_DELAY_SECONDS
    exit_on_complete: bool = False
    destroy_failed_jobs: bool = True
    signal_policy: SignalPolicy = SignalPolicy.NONE
    worker_name: str | None = None
    name_prefix: str = ""
    quiet: bool = True
    db_path: Path = Path(".queue_worker.db")
    sqlite_busy_timeout_ms: int = 5_000

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> WorkerSettings:
        """Load settings from ``QUEUE_WORKER_*`` environment variables."""

        return cls(
            min_priority=_env_optional_int("QUEUE_WORKER_MIN_PRIORITY"),
            max_priority=_env_optional_int("QUEUE_WORKER_MAX_PRIORITY"),
            max_attempts=int(
                os.getenv("QUEUE_WORKER_MAX_ATTEMPTS", str(DEFAULT_MAX_ATTEMPTS)),
            ),
            max_run_time_seconds=float(
                os.getenv(
                    "QUEUE_WORKER_MAX_RUN_TIME_SECONDS",
                    str(DEFAULT_MAX_RUN_TIME_SECONDS),
                ),
            ),
            default_priority=int(
                os.getenv("QUEUE_WORKER_DEFAULT_PRIORITY", str(DEFAULT_DEFAULT_PRIORITY)),
            ),
            delay_jobs=_env_bool("QUEUE_WORKER_DELAY_JOBS", default=DEFAULT_DELAY_JOBS),
            queues=_env_tuple("QUEUE_WORKER_QUEUES"),
            priority_queues=_env_tuple("QUEUE_WORKER_PRIORITY_QUEUES"),
            default_queue_name=os.getenv("QUEUE_WORKER_DEFAULT_QUEUE_NAME") or None,
            ignore_priority_seconds=float(
                os.getenv(
                    "QUEUE_WORKER_IGNORE_PRIORITY_SECONDS",
                    str(DEFAULT_IGNORE_PRIORITY_SECONDS),
                ),
            ),
            read_ahead=int(os.getenv("QUEUE_WORKER_READ_AHEAD", str(DEFAULT_READ_AHEAD))),
            max_reschedule=int(
                os.getenv("QUEUE_WORKER_MAX_RESCHEDULE", str(DEFAULT_MAX_RESCHEDULE)),
            ),
            sleep_delay_seconds=float(
                os.getenv("QUEUE_WORKER_SLEEP_DELAY_SECONDS", str(DEFAULT_SLEEP_DELAY_SECONDS)),
            ),
            exit_on_complete=_env_bool("QUEUE_WORKER_EXIT_ON_COMPLETE", default=False),
            destroy_failed_jobs=_env_bool("QUEUE_WORKER_DESTROY_FAILED_JOBS", default=True),
            signal_policy=_env_signal_policy("QUEUE_WORKER_SIGNAL_POLICY"),
            worker_name=os.getenv("QUEUE_WORKER_NAME") or None,
            name_prefix=os.getenv("QUEUE_WORKER_NAME_PREFIX", ""),
            quiet=_env_bool("QUEUE_WORKER_QUIET", default=True),
            db_path=db_path or Path(os.getenv("QUEUE_WORKER_DB_PATH", ".queue_worker.db")),
            sqlite_busy_timeout_ms=int(os.getenv("QUEUE_WORKER_SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )

    def validate(self) -> None:
        """Raise configuration error on values the worker cannot run with."""

        if self.max_attempts < 1:
            raise ValueError("QUEUE_WORKER_MAX_ATTEMPTS must be >= 1.")
        if self.max_run_time_seconds <= 0:
            raise ValueError("QUEUE_WORKER_MAX_RUN_TIME_SECONDS must be > 0.")
        if self.read_ahead < 1:
            raise ValueError("QUEUE_WORKER_READ_AHEAD must be >= 1.")
        if self.sleep_delay_seconds < 0:
            raise ValueError("QUEUE_WORKER_SLEEP_DELAY_SECONDS must be >= 0.")
        if self.max_reschedule < 1:
            raise ValueError("QUEUE_WORKER_MAX_RESCHEDULE must be >= 1.")
        if self.ignore_priority_seconds < 0:
            raise ValueError("QUEUE_WORKER_IGNORE_PRIORITY_SECONDS must be >= 0.")
        if (
            self.min_priority is not None
            and self.max_priority is not None
            and self.min_priority > self.max_priority
        ):
            raise ValueError(
                "QUEUE_WORKER_MIN_PRIORITY must not exceed QUEUE_WORKER_MAX_PRIORITY: "
                f"{self.min_priority} > {self.max_priority}",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _env_optional_int(name: str) -> int | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_tuple(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()
    deduped: list[str] = []
    for part in raw.split(","):
        token = part.strip()
        if token and token not in deduped:
            deduped.append(token)
    return tuple(deduped)


def _env_signal_policy(name: str) -> SignalPolicy:
    raw = os.getenv(name, SignalPolicy.NONE.value).strip().lower()
    aliases = {"false": "none", "": "none", "true": "both"}
    try:
        return SignalPolicy(aliases.get(raw, raw))
    except ValueError as error:
        allowed = ", ".join(policy.value for policy in SignalPolicy)
        raise ValueError(f"Invalid {name}: {raw!r}. Expected one of: {allowed}") from error
