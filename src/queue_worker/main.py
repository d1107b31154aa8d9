"""CLI entrypoint for queue-worker."""

from pathlib import Path

import rich_click as click

from queue_worker import __version__
from queue_worker.config import SignalPolicy
from queue_worker.controllers import (
    EnqueueCommand,
    ListJobsCommand,
    QueueWorkerCliController,
    WorkCommand,
)
from queue_worker.log_context import configure_logging

click.rich_click.USE_MARKDOWN = True
CONTROLLER = QueueWorkerCliController()


@click.group()
@click.version_option(version=__version__, prog_name="queue-worker")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging level.",
)
def queue_worker(log_level: str) -> None:
    """Persistent-queue job worker."""

    configure_logging(log_level)


@queue_worker.command("work")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", default=None, help="Worker name (defaults to the process id).")
@click.option("--queue", "queues", multiple=True, help="Only run jobs from this queue. Repeatable.")
@click.option("--min-priority", type=int, default=None, help="Lowest priority value to run.")
@click.option("--max-priority", type=int, default=None, help="Highest priority value to run.")
@click.option(
    "--sleep-delay",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds to sleep when the queue is empty.",
)
@click.option(
    "--read-ahead",
    type=click.IntRange(min=1),
    default=None,
    help="Candidates per claim.",
)
@click.option(
    "--exit-on-complete",
    is_flag=True,
    default=False,
    help="Exit once no jobs are available.",
)
@click.option(
    "--signal-policy",
    type=click.Choice([policy.value for policy in SignalPolicy]),
    default=None,
    help="Abort the running job on `term` only, on `both` signals, or `none`.",
)
@click.option(
    "--quiet/--verbose",
    default=True,
    show_default=True,
    help="Echo job lines to stdout.",
)
def work(  # noqa: PLR0913
    db_path: Path | None,
    name: str | None,
    queues: tuple[str, ...],
    min_priority: int | None,
    max_priority: int | None,
    sleep_delay: float | None,
    read_ahead: int | None,
    exit_on_complete: bool,
    signal_policy: str | None,
    quiet: bool,
) -> None:
    """Run a worker until it is stopped with INT/TERM."""

    _emit_lines(
        CONTROLLER.run_worker(
            WorkCommand(
                db_path=db_path,
                name=name,
                queues=queues,
                min_priority=min_priority,
                max_priority=max_priority,
                sleep_delay_seconds=sleep_delay,
                read_ahead=read_ahead,
                exit_on_complete=exit_on_complete,
                signal_policy=signal_policy,
                quiet=quiet,
            ),
        ),
    )


@queue_worker.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--handler", default="shell", show_default=True, help="Registered job handler.")
@click.option("--args", "args_json", default="{}", show_default=True, help="Handler args as JSON.")
@click.option("--name", default=None, help="Human-readable job name.")
@click.option("--priority", type=int, default=None, help="Lower runs first.")
@click.option("--queue", default=None, help="Queue name.")
@click.option("--delay", type=click.IntRange(min=0), default=0, help="Seconds before eligible.")
@click.option("--max-attempts", type=click.IntRange(min=1), default=None, help="Attempt limit.")
@click.option("--correlation-id", default=None, help="Id used to tag this job's log lines.")
def enqueue(  # noqa: PLR0913
    db_path: Path | None,
    handler: str,
    args_json: str,
    name: str | None,
    priority: int | None,
    queue: str | None,
    delay: int,
    max_attempts: int | None,
    correlation_id: str | None,
) -> None:
    """Add a job to the queue."""

    try:
        lines = CONTROLLER.enqueue(
            EnqueueCommand(
                db_path=db_path,
                handler=handler,
                args_json=args_json,
                name=name,
                priority=priority,
                queue=queue,
                delay_seconds=delay,
                max_attempts=max_attempts,
                correlation_id=correlation_id,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@queue_worker.command("jobs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--failed", "failed_only", is_flag=True, default=False, help="Only failed jobs.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of jobs to print.",
)
def jobs(db_path: Path | None, failed_only: bool, limit: int) -> None:
    """List queued and failed jobs."""

    _emit_lines(
        CONTROLLER.list_jobs(
            ListJobsCommand(db_path=db_path, failed_only=failed_only, limit=limit),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    queue_worker()
