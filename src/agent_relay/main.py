"""CLI entrypoint for agent-relay."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TextIO

import rich_click as click

from agent_relay import __version__
from agent_relay.orchestrator.controllers import (
    BatchListCommand,
    BatchRefCommand,
    BatchRunCommand,
    OrchestrationCliController,
    SweepCommand,
    TaskListCommand,
    TaskRefCommand,
    TaskRunCommand,
    WorkerExecuteCommand,
)

click.rich_click.USE_MARKDOWN = True
ORCHESTRATION_CONTROLLER = OrchestrationCliController()

TASK_STATUSES = ["pending", "running", "completed", "error", "cancelled"]
BATCH_STATUSES = ["pending", "running", "aggregating", "completed", "error", "cancelled"]


@click.group()
@click.version_option(version=__version__, prog_name="agent-relay")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    show_default=True,
    help="Logging verbosity for orchestration internals.",
)
def agent_relay(log_level: str) -> None:
    """Task and batch orchestration CLI."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_relay.group()
def task() -> None:
    """Single-task commands."""


@task.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--subject", required=True, help="Subject the workers analyze, for example a ticker.")
@click.option(
    "--skip-phase",
    "skip_phases",
    multiple=True,
    help="Optional phase to skip. Can be repeated.",
)
@click.option(
    "--fail-role",
    "fail_roles",
    multiple=True,
    help="Make the local demo worker for this role fail. Can be repeated.",
)
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=1),
    default=600,
    show_default=True,
    help="How long to wait for the task to finish.",
)
def task_run(
    db_path: Path | None,
    subject: str,
    skip_phases: tuple[str, ...],
    fail_roles: tuple[str, ...],
    timeout_seconds: int,
) -> None:
    """Create a task, drive it through every phase and print its report."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATION_CONTROLLER.run_task(
                TaskRunCommand(
                    db_path=db_path,
                    subject=subject,
                    skip_phases=skip_phases,
                    fail_roles=fail_roles,
                    timeout_seconds=timeout_seconds,
                ),
            ),
        ),
    )


@task.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(TASK_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def task_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent tasks."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATION_CONTROLLER.list_tasks(
                TaskListCommand(db_path=db_path, status=status, limit=limit),
            ),
        ),
    )


@task.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def task_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with its per-role outcomes and event history."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATION_CONTROLLER.inspect_task(
                TaskRefCommand(db_path=db_path, task_id=task_id),
            ),
        ),
    )


@task.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def task_cancel(db_path: Path | None, task_id: str) -> None:
    """Request cancellation of a task."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATION_CONTROLLER.cancel_task(
                TaskRefCommand(db_path=db_path, task_id=task_id),
            ),
        ),
    )


@task.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def task_retry(db_path: Path | None, task_id: str) -> None:
    """Re-run the failed roles of a task that ended in error."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATION_CONTROLLER.retry_task(
                TaskRefCommand(db_path=db_path, task_id=task_id),
            ),
        ),
    )


@agent_relay.group()
def batch() -> None:
    """Batch commands."""


@batch.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--subject",
    "subjects",
    multiple=True,
    required=True,
    help="Subject for one member task. Repeat for every subject.",
)
@click.option(
    "--skip-phase",
    "skip_phases",
    multiple=True,
    help="Optional phase every member task skips. Can be repeated.",
)
@click.option(
    "--fail-role",
    "fail_roles",
    multiple=True,
    help="Make the local demo worker for this role fail. Can be repeated.",
)
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=1),
    default=1800,
    show_default=True,
    help="How long to wait for the batch to finish.",
)
def batch_run(
    db_path: Path | None,
    subjects: tuple[str, ...],
    skip_phases: tuple[str, ...],
    fail_roles: tuple[str, ...],
    timeout_seconds: int,
) -> None:
    """Fan out one task per subject and print the aggregate once all are done."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATION_CONTROLLER.run_batch(
                BatchRunCommand(
                    db_path=db_path,
                    subjects=subjects,
                    skip_phases=skip_phases,
                    fail_roles=fail_roles,
                    timeout_seconds=timeout_seconds,
                ),
            ),
        ),
    )


@batch.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(BATCH_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max batches to print.",
)
def batch_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent batches."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATION_CONTROLLER.list_batches(
                BatchListCommand(db_path=db_path, status=status, limit=limit),
            ),
        ),
    )


@batch.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--batch-id", required=True, help="Batch id.")
def batch_inspect(db_path: Path | None, batch_id: str) -> None:
    """Inspect one batch with its member tasks and event history."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATION_CONTROLLER.inspect_batch(
                BatchRefCommand(db_path=db_path, batch_id=batch_id),
            ),
        ),
    )


@batch.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--batch-id", required=True, help="Batch id.")
def batch_cancel(db_path: Path | None, batch_id: str) -> None:
    """Cancel a batch and every member task still in flight."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATION_CONTROLLER.cancel_batch(
                BatchRefCommand(db_path=db_path, batch_id=batch_id),
            ),
        ),
    )


@agent_relay.command("sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--stale-after-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Treat running tasks untouched for this long as stale. "
    "Defaults to AGENT_RELAY_STALE_AFTER_SECONDS.",
)
def sweep(db_path: Path | None, stale_after_seconds: int | None) -> None:
    """Recover running tasks and batches whose hand-off was lost."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATION_CONTROLLER.sweep(
                SweepCommand(db_path=db_path, stale_after_seconds=stale_after_seconds),
            ),
        ),
    )


@agent_relay.group()
def worker() -> None:
    """Worker-side commands."""


@worker.command("execute")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--payload-file",
    type=click.File("r"),
    default="-",
    show_default=True,
    help="JSON invocation request; '-' reads stdin.",
)
@click.option(
    "--fail-role",
    "fail_roles",
    multiple=True,
    help="Make the local demo worker for this role fail. Can be repeated.",
)
def worker_execute(
    db_path: Path | None,
    payload_file: TextIO,
    fail_roles: tuple[str, ...],
) -> None:
    """Execute one invocation request and print the response envelope as JSON."""

    payload = payload_file.read()
    _emit_lines(
        _guarded(
            lambda: ORCHESTRATION_CONTROLLER.execute_worker(
                WorkerExecuteCommand(db_path=db_path, payload=payload, fail_roles=fail_roles),
            ),
        ),
    )


def _guarded(call: Callable[[], list[str]]) -> list[str]:
    try:
        return call()
    except (LookupError, ValueError, RuntimeError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_relay()
