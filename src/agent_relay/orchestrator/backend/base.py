"""Worker and aggregate-action interfaces plus the role registry."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from agent_relay.orchestrator.models import BatchView, TaskView, WorkerInvocation


class WorkerHandler(Protocol):
    """Domain computation behind one role.

    Returns the result payload, or ``None`` when no result was produced (the
    watchdog then treats the attempt as timed out). Failures are raised; the
    runtime classifies and records them.
    """

    def __call__(self, invocation: WorkerInvocation) -> dict[str, Any] | None:
        """Run one attempt for the invocation."""


class AggregateAction(Protocol):
    """Downstream action fired once per batch after every task is terminal."""

    def __call__(self, batch: BatchView, tasks: list[TaskView]) -> dict[str, Any]:
        """Return the aggregate payload; raise to record an aggregate error."""


class UnknownRoleError(LookupError):
    pass


class WorkerRegistry:
    """Maps role names to worker handlers."""

    def __init__(self, handlers: Mapping[str, WorkerHandler] | None = None) -> None:
        self._handlers: dict[str, WorkerHandler] = dict(handlers or {})

    def register(self, role: str, handler: WorkerHandler) -> None:
        self._handlers[str(role)] = handler

    def resolve(self, role: str) -> WorkerHandler:
        try:
            return self._handlers[role]
        except KeyError as error:
            raise UnknownRoleError(f"No worker registered for role: {role}") from error

    def roles(self) -> list[str]:
        return sorted(self._handlers)
