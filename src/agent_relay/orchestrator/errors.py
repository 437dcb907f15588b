"""Exceptions raised by the orchestration layer."""

from __future__ import annotations

from agent_relay.orchestrator.models import ErrorKind


class WorkerError(RuntimeError):
    """Raised by worker handlers to report an already-classified failure."""

    def __init__(self, message: str, *, kind: ErrorKind = ErrorKind.OTHER) -> None:
        super().__init__(message)
        self.kind = kind


class StoreUnavailableError(RuntimeError):
    """The state store could not be reached; the write outcome is unknown."""


class ConcurrentUpdateError(RuntimeError):
    """A conditional update kept losing version races and gave up."""


class TaskNotFoundError(LookupError):
    pass


class BatchNotFoundError(LookupError):
    pass


class WorkflowConfigError(ValueError):
    """Invalid phase table or skip configuration."""
