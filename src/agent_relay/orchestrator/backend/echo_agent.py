"""Local deterministic demo workers for CLI runs and integration tests."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from agent_relay.orchestrator.backend.base import WorkerRegistry
from agent_relay.orchestrator.errors import WorkerError
from agent_relay.orchestrator.models import (
    BatchView,
    ErrorKind,
    Outcome,
    TaskStatus,
    TaskView,
    WorkerInvocation,
)
from agent_relay.orchestrator.workflow import Workflow


class EchoWorker:
    """Echoes the invocation back as a payload, optionally failing on purpose."""

    def __init__(self, *, fail_with: ErrorKind | None = None) -> None:
        self.fail_with = fail_with

    def __call__(self, invocation: WorkerInvocation) -> dict[str, Any]:
        if self.fail_with is not None:
            raise WorkerError(
                f"{invocation.role} failed on purpose for {invocation.subject}",
                kind=self.fail_with,
            )
        prior = invocation.context.get("prior_results", {})
        return {
            "backend": "echo_agent",
            "role": invocation.role,
            "subject": invocation.subject,
            "round": invocation.context.get("round", 0),
            "attempt": invocation.attempt,
            "seen_phases": sorted(prior),
            "summary": f"{invocation.role} view on {invocation.subject}",
        }


def build_echo_registry(
    workflow: Workflow,
    *,
    fail_roles: Iterable[str] = (),
    fail_with: ErrorKind = ErrorKind.UPSTREAM_ERROR,
) -> WorkerRegistry:
    """Register an echo worker for every role of the workflow."""

    failing = set(fail_roles)
    registry = WorkerRegistry()
    for phase in workflow.phases:
        for role in phase.roles:
            registry.register(role, EchoWorker(fail_with=fail_with if role in failing else None))
    return registry


def summarize_batch(batch: BatchView, tasks: list[TaskView]) -> dict[str, Any]:
    """Demo aggregate action: count outcomes per task and list failed roles."""

    failures: dict[str, list[str]] = {}
    for task in tasks:
        failed = [
            f"{phase}/{key}"
            for phase, entries in task.phase_results.items()
            for key, result in entries.items()
            if result.outcome == Outcome.ERROR
        ]
        if failed:
            failures[task.subject] = failed
    return {
        "batch_id": batch.batch_id,
        "subjects": [task.subject for task in tasks],
        "completed": sum(1 for task in tasks if task.status == TaskStatus.COMPLETED),
        "errors": sum(1 for task in tasks if task.status == TaskStatus.ERROR),
        "cancelled": sum(1 for task in tasks if task.status == TaskStatus.CANCELLED),
        "failed_roles": failures,
    }
