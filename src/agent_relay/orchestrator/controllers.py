"""Controllers for orchestration CLI commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from agent_relay.config import Settings
from agent_relay.orchestrator.backend import (
    HttpWorkerHandler,
    WorkerRegistry,
    build_echo_registry,
    build_http_registry,
    handle_invocation_payload,
    summarize_batch,
)
from agent_relay.orchestrator.dispatch import Dispatcher, InlineDispatcher, ThreadPoolDispatcher
from agent_relay.orchestrator.engine import Orchestrator
from agent_relay.orchestrator.models import BatchStatus, TaskStatus
from agent_relay.orchestrator.report import build_task_report, render_report_lines
from agent_relay.orchestrator.repository import StateStore
from agent_relay.orchestrator.watchdog import RetryPolicy, ThreadingScheduler
from agent_relay.orchestrator.workflow import Workflow, default_workflow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TaskRunCommand:
    """CLI input for running one task end to end."""

    db_path: Path | None
    subject: str
    skip_phases: tuple[str, ...]
    fail_roles: tuple[str, ...]
    timeout_seconds: int


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskRefCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class BatchRunCommand:
    """CLI input for running a batch of subjects end to end."""

    db_path: Path | None
    subjects: tuple[str, ...]
    skip_phases: tuple[str, ...]
    fail_roles: tuple[str, ...]
    timeout_seconds: int


@dataclass(slots=True)
class BatchListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class BatchRefCommand:
    db_path: Path | None
    batch_id: str


@dataclass(slots=True)
class SweepCommand:
    db_path: Path | None
    stale_after_seconds: int | None


@dataclass(slots=True)
class WorkerExecuteCommand:
    """CLI input for executing one serialized invocation against local workers."""

    db_path: Path | None
    payload: str
    fail_roles: tuple[str, ...]


@dataclass(slots=True)
class OrchestrationCliController:
    """Runs, inspects and mutates tasks and batches for the CLI."""

    def run_task(self, command: TaskRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _orchestrator(settings, fail_roles=command.fail_roles) as orchestrator:
            task = orchestrator.submit_task(
                command.subject,
                owner=settings.owner,
                skip_phases=command.skip_phases,
            )
            task = orchestrator.wait_for_task(
                task.task_id,
                timeout_seconds=command.timeout_seconds,
            )
            report = build_task_report(task, orchestrator.workflow)
        lines = render_report_lines(report)
        if not task.is_terminal:
            lines.append(
                f"Task still {task.status.value} after {command.timeout_seconds}s; "
                "inspect it later or run sweep.",
            )
        return lines

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = TaskStatus(command.status.strip().lower()) if command.status else None
        with _store(settings) as store:
            tasks = store.list_tasks(status=status, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} subject={task.subject} status={task.status.value} "
                f"phase={task.current_phase or '-'} batch={task.batch_id or '-'} "
                f"created_at={task.created_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        workflow = _workflow(settings)
        with _store(settings) as store:
            task = store.get_task(command.task_id)
            if task is None:
                return [f"Task not found: {command.task_id}"]
            events = store.list_events(task_id=command.task_id)

        lines = render_report_lines(build_task_report(task, workflow))
        lines.append(f"cancel_requested={task.cancel_requested} version={task.version}")
        lines.append(f"Events: {len(events)}")
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from or '-'} -> {event.status_to or '-'}",
            )
        return lines

    def cancel_task(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _orchestrator(settings, inline=True) as orchestrator:
            task = orchestrator.cancel_task(command.task_id)
        return [f"Task {task.task_id}: status={task.status.value} cancel_requested=True"]

    def retry_task(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _orchestrator(settings, inline=True) as orchestrator:
            task = orchestrator.retry_task(command.task_id)
            report = build_task_report(task, orchestrator.workflow)
        return [f"Task retried: {command.task_id}", *render_report_lines(report)]

    def run_batch(self, command: BatchRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _orchestrator(settings, fail_roles=command.fail_roles) as orchestrator:
            batch = orchestrator.submit_batch(
                command.subjects,
                owner=settings.owner,
                skip_flags=command.skip_phases,
            )
            batch = orchestrator.wait_for_batch(
                batch.batch_id,
                timeout_seconds=command.timeout_seconds,
            )
            tasks = orchestrator.store.list_batch_tasks(batch.batch_id)
        lines = _batch_lines(batch.batch_id, batch.status.value, batch.aggregate_result)
        lines.extend(
            f"  {task.task_id} subject={task.subject} status={task.status.value} "
            f"error={task.error_summary or '-'}"
            for task in tasks
        )
        if not batch.is_terminal:
            lines.append(
                f"Batch still {batch.status.value} after {command.timeout_seconds}s; "
                "inspect it later or run sweep.",
            )
        return lines

    def list_batches(self, command: BatchListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = BatchStatus(command.status.strip().lower()) if command.status else None
        with _store(settings) as store:
            batches = store.list_batches(status=status, limit=command.limit)
            terminal_counts = {
                batch.batch_id: store.count_terminal_tasks(batch.batch_id) for batch in batches
            }

        lines = [f"Batches: {len(batches)}"]
        for batch in batches:
            lines.append(
                f"  {batch.batch_id} status={batch.status.value} "
                f"tasks={terminal_counts[batch.batch_id]}/{batch.task_count} "
                f"created_at={batch.created_at.isoformat()}",
            )
        return lines

    def inspect_batch(self, command: BatchRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            batch = store.get_batch(command.batch_id)
            if batch is None:
                return [f"Batch not found: {command.batch_id}"]
            tasks = store.list_batch_tasks(command.batch_id)
            events = store.list_events(batch_id=command.batch_id)

        lines = _batch_lines(batch.batch_id, batch.status.value, batch.aggregate_result)
        lines.append(
            f"aggregate_triggered={batch.aggregate_triggered} "
            f"cancel_requested={batch.cancel_requested} "
            f"skip_flags={','.join(batch.skip_flags) or '-'}",
        )
        if batch.error_summary:
            lines.append(f"error_summary={batch.error_summary}")
        lines.append(f"Tasks: {len(tasks)}")
        lines.extend(
            f"  {task.task_id} subject={task.subject} status={task.status.value} "
            f"phase={task.current_phase or '-'}"
            for task in tasks
        )
        lines.append(f"Events: {len(events)}")
        lines.extend(
            f"  {event.created_at.isoformat()} {event.event_type} "
            f"{event.status_from or '-'} -> {event.status_to or '-'}"
            for event in events
        )
        return lines

    def cancel_batch(self, command: BatchRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _orchestrator(settings, inline=True) as orchestrator:
            batch = orchestrator.cancel_batch(command.batch_id)
        return [f"Batch {batch.batch_id}: status={batch.status.value}"]

    def sweep(self, command: SweepCommand) -> list[str]:
        settings = _settings(command.db_path)
        stale_after = command.stale_after_seconds or settings.stale_after_seconds
        with _orchestrator(settings, inline=True) as orchestrator:
            summary = orchestrator.sweep(stale_after=timedelta(seconds=stale_after))
        return [
            "Sweep summary: "
            f"scanned={summary.scanned_tasks} redispatched={summary.redispatched} "
            f"timed_out={summary.timed_out} rechecked_batches={summary.rechecked_batches} "
            f"aggregates_triggered={summary.aggregates_triggered} "
            f"started={summary.started_tasks} aggregates_resumed={summary.aggregates_resumed}",
        ]

    def execute_worker(self, command: WorkerExecuteCommand) -> list[str]:
        """Run one serialized invocation through the worker runtime and print its envelope."""

        settings = _settings(command.db_path)
        try:
            payload = json.loads(command.payload)
        except json.JSONDecodeError as error:
            raise ValueError(f"Invocation payload is not valid JSON: {error}") from error
        with _orchestrator(settings, fail_roles=command.fail_roles, inline=True) as orchestrator:
            envelope = handle_invocation_payload(orchestrator.runtime, payload)
        return [json.dumps(envelope, sort_keys=True)]


def build_orchestrator(  # noqa: PLR0913
    *,
    settings: Settings,
    store: StateStore,
    registry: WorkerRegistry,
    workflow: Workflow | None = None,
    dispatcher: Dispatcher | None = None,
) -> Orchestrator:
    """Assemble an orchestrator from settings with the default scheduler and aggregate."""

    return Orchestrator(
        store=store,
        workflow=workflow or _workflow(settings),
        registry=registry,
        dispatcher=dispatcher or _dispatcher(settings),
        scheduler=ThreadingScheduler(),
        aggregate_action=summarize_batch,
        policy=RetryPolicy(
            timeout_seconds=settings.watchdog.timeout_seconds,
            max_retries=settings.watchdog.max_retries,
            retry_delay_seconds=settings.watchdog.retry_delay_seconds,
        ),
        notify_max_retries=settings.notifications.max_retries,
        notify_backoff_seconds=settings.notifications.backoff_seconds,
    )


def _batch_lines(batch_id: str, status: str, aggregate: dict | None) -> list[str]:
    lines = [f"batch_id={batch_id}", f"status={status}"]
    if aggregate is not None:
        lines.append(f"aggregate={json.dumps(aggregate, sort_keys=True)}")
    return lines


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _workflow(settings: Settings) -> Workflow:
    return default_workflow(
        debate_rounds=settings.workflow.debate_rounds,
        hard_required=settings.workflow.hard_required_phases,
    )


def _dispatcher(settings: Settings) -> Dispatcher:
    if settings.inline_dispatch:
        return InlineDispatcher()
    return ThreadPoolDispatcher(max_workers=settings.dispatch_max_workers)


@contextmanager
def _store(settings: Settings) -> Iterator[StateStore]:
    store = StateStore(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    store.init_schema()
    try:
        yield store
    finally:
        store.close()


@contextmanager
def _orchestrator(
    settings: Settings,
    *,
    fail_roles: tuple[str, ...] = (),
    inline: bool = False,
) -> Iterator[Orchestrator]:
    workflow = _workflow(settings)
    known_roles = {role for phase in workflow.phases for role in phase.roles}
    unknown_roles = sorted(set(fail_roles) - known_roles)
    if unknown_roles:
        raise ValueError(f"Unknown roles: {', '.join(unknown_roles)}")
    http_handler: HttpWorkerHandler | None = None
    if settings.remote.base_url is not None:
        http_handler = HttpWorkerHandler(
            base_url=settings.remote.base_url,
            timeout_seconds=settings.remote.timeout_seconds,
            max_retries=settings.remote.max_retries,
            retry_backoff_seconds=settings.remote.retry_backoff_seconds,
        )
        registry = build_http_registry(workflow, http_handler)
    else:
        registry = build_echo_registry(workflow, fail_roles=fail_roles)

    dispatcher = InlineDispatcher() if inline else _dispatcher(settings)
    with _store(settings) as store:
        orchestrator = build_orchestrator(
            settings=settings,
            store=store,
            registry=registry,
            workflow=workflow,
            dispatcher=dispatcher,
        )
        try:
            yield orchestrator
        finally:
            if isinstance(dispatcher, ThreadPoolDispatcher):
                if not dispatcher.wait_idle(timeout_seconds=settings.watchdog.timeout_seconds):
                    logger.warning("Dispatcher still busy on exit; abandoning queued hand-offs")
                dispatcher.shutdown(wait=False)
            orchestrator.close()
            if http_handler is not None:
                http_handler.close()
