from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from agent_relay import __version__
from agent_relay.main import agent_relay

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("CLI"),
]


@pytest.fixture()
def db_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("AGENT_RELAY_INLINE_DISPATCH", "1")
    monkeypatch.delenv("AGENT_RELAY_REMOTE_WORKER_URL", raising=False)
    monkeypatch.delenv("AGENT_RELAY_HARD_REQUIRED_PHASES", raising=False)
    monkeypatch.delenv("AGENT_RELAY_DEBATE_ROUNDS", raising=False)
    return tmp_path / "cli.db"


def _value(output: str, key: str) -> str:
    for line in output.splitlines():
        if line.startswith(f"{key}="):
            return line.split("=", 1)[1]
    raise AssertionError(f"{key}= not found in output:\n{output}")


def test_task_run_list_and_inspect(db_path: Path) -> None:
    runner = CliRunner()

    run = runner.invoke(
        agent_relay,
        ["task", "run", "--db-path", str(db_path), "--subject", "AAPL", "--skip-phase", "trading"],
    )

    assert run.exit_code == 0, run.output
    assert "status=completed" in run.output
    assert "phase trading (sequential): skipped" in run.output
    task_id = _value(run.output, "task_id")

    listed = runner.invoke(agent_relay, ["task", "list", "--db-path", str(db_path)])
    assert listed.exit_code == 0, listed.output
    assert "Tasks: 1" in listed.output
    assert task_id in listed.output

    inspected = runner.invoke(
        agent_relay,
        ["task", "inspect", "--db-path", str(db_path), "--task-id", task_id],
    )
    assert inspected.exit_code == 0, inspected.output
    assert "  research_manager: success attempt=0" in inspected.output
    assert "Events:" in inspected.output
    assert "completed" in inspected.output


def test_task_run_with_failing_role_and_retry(
    db_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("AGENT_RELAY_HARD_REQUIRED_PHASES", "analysis")
    runner = CliRunner()

    run = runner.invoke(
        agent_relay,
        ["task", "run", "--db-path", str(db_path), "--subject", "MSFT", "--fail-role", "news"],
    )

    assert run.exit_code == 0, run.output
    assert "status=error" in run.output
    assert "error_summary=Phase analysis failed: news (upstream_error)" in run.output
    task_id = _value(run.output, "task_id")

    retried = runner.invoke(
        agent_relay,
        ["task", "retry", "--db-path", str(db_path), "--task-id", task_id],
    )
    assert retried.exit_code == 0, retried.output
    assert f"Task retried: {task_id}" in retried.output
    assert "status=completed" in retried.output


def test_task_run_rejects_required_skip_and_unknown_role(db_path: Path) -> None:
    runner = CliRunner()

    skipped = runner.invoke(
        agent_relay,
        ["task", "run", "--db-path", str(db_path), "--subject", "AAPL", "--skip-phase", "research"],
    )
    unknown = runner.invoke(
        agent_relay,
        ["task", "run", "--db-path", str(db_path), "--subject", "AAPL", "--fail-role", "nope"],
    )

    assert skipped.exit_code == 1
    assert "required" in skipped.output
    assert unknown.exit_code == 1
    assert "Unknown roles: nope" in unknown.output


def test_task_inspect_unknown_id(db_path: Path) -> None:
    result = CliRunner().invoke(
        agent_relay,
        ["task", "inspect", "--db-path", str(db_path), "--task-id", "nope"],
    )

    assert result.exit_code == 0, result.output
    assert "Task not found: nope" in result.output


def test_batch_run_list_and_inspect(db_path: Path) -> None:
    runner = CliRunner()

    run = runner.invoke(
        agent_relay,
        [
            "batch",
            "run",
            "--db-path",
            str(db_path),
            "--subject",
            "AAPL",
            "--subject",
            "MSFT",
        ],
    )

    assert run.exit_code == 0, run.output
    assert "status=completed" in run.output
    aggregate = json.loads(_value(run.output, "aggregate"))
    assert aggregate["subjects"] == ["AAPL", "MSFT"]
    assert aggregate["completed"] == 2
    batch_id = _value(run.output, "batch_id")

    listed = runner.invoke(agent_relay, ["batch", "list", "--db-path", str(db_path)])
    assert listed.exit_code == 0, listed.output
    assert "Batches: 1" in listed.output
    assert "tasks=2/2" in listed.output

    inspected = runner.invoke(
        agent_relay,
        ["batch", "inspect", "--db-path", str(db_path), "--batch-id", batch_id],
    )
    assert inspected.exit_code == 0, inspected.output
    assert "aggregate_triggered=True" in inspected.output
    assert "Tasks: 2" in inspected.output


def test_batch_run_rejects_duplicate_subjects(db_path: Path) -> None:
    result = CliRunner().invoke(
        agent_relay,
        ["batch", "run", "--db-path", str(db_path), "--subject", "AAPL", "--subject", "AAPL"],
    )

    assert result.exit_code == 1
    assert "Duplicate batch subjects" in result.output


def test_cancel_of_finished_task_is_a_no_op(db_path: Path) -> None:
    runner = CliRunner()
    run = runner.invoke(
        agent_relay,
        ["task", "run", "--db-path", str(db_path), "--subject", "AAPL"],
    )
    task_id = _value(run.output, "task_id")

    cancelled = runner.invoke(
        agent_relay,
        ["task", "cancel", "--db-path", str(db_path), "--task-id", task_id],
    )

    assert cancelled.exit_code == 0, cancelled.output
    assert "status=completed" in cancelled.output


def test_sweep_on_empty_database(db_path: Path) -> None:
    result = CliRunner().invoke(agent_relay, ["sweep", "--db-path", str(db_path)])

    assert result.exit_code == 0, result.output
    assert "Sweep summary: scanned=0 redispatched=0 timed_out=0" in result.output


def test_worker_execute_answers_with_soft_envelope(db_path: Path) -> None:
    request = {
        "taskId": "nope",
        "subject": "AAPL",
        "owner": "alice",
        "phase": "analysis",
        "role": "macro",
        "attempt": 0,
        "maxAttempts": 4,
    }

    result = CliRunner().invoke(
        agent_relay,
        ["worker", "execute", "--db-path", str(db_path)],
        input=json.dumps(request),
    )

    assert result.exit_code == 0, result.output
    envelope = json.loads(result.output.strip().splitlines()[-1])
    assert envelope["success"] is False
    assert envelope["result"]["error"] == "Task not found: nope"


def test_worker_execute_rejects_invalid_json(db_path: Path) -> None:
    result = CliRunner().invoke(
        agent_relay,
        ["worker", "execute", "--db-path", str(db_path)],
        input="{not json",
    )

    assert result.exit_code == 1
    assert "not valid JSON" in result.output


def test_task_run_on_thread_pool(db_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_RELAY_INLINE_DISPATCH", "0")
    monkeypatch.setenv("AGENT_RELAY_DISPATCH_MAX_WORKERS", "4")

    result = CliRunner().invoke(
        agent_relay,
        ["task", "run", "--db-path", str(db_path), "--subject", "NVDA", "--timeout-seconds", "60"],
    )

    assert result.exit_code == 0, result.output
    assert "status=completed" in result.output


def test_version_option() -> None:
    result = CliRunner().invoke(agent_relay, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output
