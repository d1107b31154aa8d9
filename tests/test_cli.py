import json
import os
import shlex
import sys

import allure
import pytest
from click.testing import CliRunner

from queue_worker import __version__
from queue_worker.main import queue_worker

pytestmark = [
    allure.epic("Worker Runtime"),
    allure.feature("CLI"),
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("QUEUE_WORKER_"):
            monkeypatch.delenv(key)


def _python_command(code: str) -> str:
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(queue_worker, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_enqueue_work_and_list_jobs(tmp_path):
    db_path = str(tmp_path / "queue.db")
    runner = CliRunner()

    ok = runner.invoke(
        queue_worker,
        [
            "enqueue",
            "--db-path",
            db_path,
            "--name",
            "greet",
            "--args",
            json.dumps({"command": _python_command("print('hi')")}),
        ],
    )
    broken = runner.invoke(
        queue_worker,
        [
            "enqueue",
            "--db-path",
            db_path,
            "--name",
            "explode",
            "--args",
            json.dumps({"command": _python_command("raise SystemExit(3)")}),
        ],
    )
    assert ok.exit_code == 0, ok.output
    assert broken.exit_code == 0, broken.output
    assert "Enqueued job" in ok.output
    assert "name=greet" in ok.output

    worked = runner.invoke(
        queue_worker,
        ["work", "--db-path", db_path, "--exit-on-complete", "--sleep-delay", "0", "--name", "cli"],
    )
    assert worked.exit_code == 0, worked.output
    assert "Worker cli stopped" in worked.output

    listed = runner.invoke(queue_worker, ["jobs", "--db-path", db_path])
    assert listed.exit_code == 0, listed.output
    assert "Jobs: pending=1 locked=0 failed=0" in listed.output
    assert "explode state=pending" in listed.output
    assert "attempts=1" in listed.output
    assert "greet" not in listed.output


def test_enqueue_rejects_invalid_args(tmp_path):
    runner = CliRunner()

    result = runner.invoke(
        queue_worker,
        ["enqueue", "--db-path", str(tmp_path / "queue.db"), "--args", "[1, 2]"],
    )

    assert result.exit_code != 0
    assert "--args must be a JSON object" in result.output


def test_enqueue_rejects_unknown_handler(tmp_path):
    runner = CliRunner()

    result = runner.invoke(
        queue_worker,
        ["enqueue", "--db-path", str(tmp_path / "queue.db"), "--handler", "missing"],
    )

    assert result.exit_code != 0
    assert "Unknown job handler" in result.output


def test_jobs_on_empty_database(tmp_path):
    runner = CliRunner()

    result = runner.invoke(queue_worker, ["jobs", "--db-path", str(tmp_path / "queue.db")])

    assert result.exit_code == 0
    assert "Jobs: pending=0 locked=0 failed=0" in result.output
