"""Domain models for task/batch orchestration state and wire messages."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar

from agent_relay.storage.common import from_iso

StateT = TypeVar("StateT")


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class BatchStatus(str, Enum):
    """Durable batch lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.ERROR, TaskStatus.CANCELLED},
)
TERMINAL_BATCH_STATUSES = frozenset(
    {BatchStatus.COMPLETED, BatchStatus.ERROR, BatchStatus.CANCELLED},
)


class PhaseMode(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class Outcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class ErrorKind(str, Enum):
    """Failure taxonomy workers classify their errors into."""

    RATE_LIMIT = "rate_limit"
    AUTH_FAILURE = "auth_failure"
    UPSTREAM_ERROR = "upstream_error"
    DATA_FETCH_ERROR = "data_fetch_error"
    TIMEOUT = "timeout"
    OTHER = "other"


class CompletionType(str, Enum):
    NORMAL = "normal"
    LAST_IN_PHASE = "last_in_phase"
    INVOCATION_FAILED = "invocation_failed"
    ERROR = "error"


@dataclass(slots=True)
class WorkerResult:
    """Outcome of one worker role, keyed by (phase, role) on the task."""

    role: str
    timestamp: datetime
    outcome: Outcome
    attempt: int
    payload: dict[str, Any] = field(default_factory=dict)
    error_kind: ErrorKind | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == Outcome.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "workerRole": self.role,
            "timestamp": self.timestamp.isoformat(),
            "outcome": self.outcome.value,
            "attempt": self.attempt,
            "payload": self.payload,
            "errorKind": self.error_kind.value if self.error_kind is not None else None,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkerResult:
        error_kind = data.get("errorKind")
        return cls(
            role=str(data["workerRole"]),
            timestamp=from_iso(str(data["timestamp"])),
            outcome=Outcome(data["outcome"]),
            attempt=int(data.get("attempt", 0)),
            payload=dict(data.get("payload") or {}),
            error_kind=ErrorKind(error_kind) if error_kind else None,
            error=data.get("error"),
        )


def should_replace_result(existing: WorkerResult | None, incoming: WorkerResult) -> bool:
    """Whether ``incoming`` may overwrite the stored result for the same key.

    A success is never replaced by an error, so a late watchdog timeout cannot
    clobber a result the worker did deliver.
    """

    if existing is None:
        return True
    if existing == incoming:
        return False
    return incoming.succeeded or not existing.succeeded


@dataclass(slots=True)
class DispatchMark:
    """Durable marker that a role was handed to a worker."""

    attempt: int
    dispatched_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {"attempt": self.attempt, "dispatchedAt": self.dispatched_at.isoformat()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DispatchMark:
        return cls(attempt=int(data["attempt"]), dispatched_at=from_iso(str(data["dispatchedAt"])))


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    subject: str
    owner: str
    task_id: str | None = None
    batch_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    skip_phases: tuple[str, ...] = ()


@dataclass(slots=True)
class TaskView:
    """Readable task state used by coordinators, workers and the CLI."""

    task_id: str
    owner: str
    subject: str
    batch_id: str | None
    status: TaskStatus
    current_phase: str | None
    phase_results: dict[str, dict[str, WorkerResult]]
    dispatched: dict[str, dict[str, DispatchMark]]
    context: dict[str, Any]
    skip_phases: tuple[str, ...]
    cancel_requested: bool
    version: int
    error_summary: str | None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def result_for(self, phase: str, key: str) -> WorkerResult | None:
        return self.phase_results.get(phase, {}).get(key)

    def dispatch_for(self, phase: str, key: str) -> DispatchMark | None:
        return self.dispatched.get(phase, {}).get(key)

    def with_result(self, phase: str, key: str, result: WorkerResult) -> TaskView:
        """Copy of the task with ``result`` stored under ``(phase, key)``."""

        results = {name: dict(entries) for name, entries in self.phase_results.items()}
        results.setdefault(phase, {})[key] = result
        return replace(self, phase_results=results)

    def with_dispatch(self, phase: str, key: str, mark: DispatchMark) -> TaskView:
        dispatched = {name: dict(entries) for name, entries in self.dispatched.items()}
        dispatched.setdefault(phase, {})[key] = mark
        return replace(self, dispatched=dispatched)


@dataclass(slots=True)
class BatchCreate:
    """Input payload for creating a batch and its member tasks."""

    owner: str
    subjects: tuple[str, ...]
    batch_id: str | None = None
    skip_flags: tuple[str, ...] = ()
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class BatchView:
    """Readable batch state."""

    batch_id: str
    owner: str
    status: BatchStatus
    task_ids: tuple[str, ...]
    task_count: int
    skip_flags: tuple[str, ...]
    aggregate_triggered: bool
    cancel_requested: bool
    aggregate_result: dict[str, Any] | None
    error_summary: str | None
    version: int
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BATCH_STATUSES


@dataclass(slots=True)
class EventView:
    """Audit trail entry for a task or batch."""

    event_id: int
    task_id: str | None
    batch_id: str | None
    event_type: str
    status_from: str | None
    status_to: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class UpdateResult(Generic[StateT]):
    """Outcome of a conditional update: whether it applied and the state after it."""

    applied: bool
    state: StateT


@dataclass(slots=True)
class WorkerInvocation:
    """Request handed to a worker for one (task, phase, role) attempt."""

    task_id: str
    subject: str
    owner: str
    phase: str
    role: str
    slot: str
    attempt: int
    max_attempts: int
    context: dict[str, Any] = field(default_factory=dict)

    def next_attempt(self) -> WorkerInvocation:
        return replace(self, attempt=self.attempt + 1)

    def to_payload(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "subject": self.subject,
            "owner": self.owner,
            "phase": self.phase,
            "role": self.role,
            "slot": self.slot,
            "attempt": self.attempt,
            "maxAttempts": self.max_attempts,
            "context": self.context,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> WorkerInvocation:
        role = str(payload["role"])
        return cls(
            task_id=str(payload["taskId"]),
            subject=str(payload["subject"]),
            owner=str(payload["owner"]),
            phase=str(payload["phase"]),
            role=role,
            slot=str(payload.get("slot") or role),
            attempt=int(payload.get("attempt", 0)),
            max_attempts=int(payload.get("maxAttempts", 1)),
            context=dict(payload.get("context") or {}),
        )


@dataclass(slots=True)
class InvocationResponse:
    """Soft envelope returned by a worker invocation."""

    success: bool
    result: dict[str, Any] | None = None
    retry_scheduled: bool = False

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.result is not None:
            payload["result"] = self.result
        if self.retry_scheduled:
            payload["retryScheduled"] = True
        return payload


@dataclass(slots=True)
class CoordinatorNotification:
    """Completion message a worker or watchdog sends to the task coordinator."""

    task_id: str
    phase: str
    role: str
    completion_type: CompletionType
    error: str | None = None
    error_kind: ErrorKind | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "taskId": self.task_id,
            "phase": self.phase,
            "role": self.role,
            "completionType": self.completion_type.value,
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.error_kind is not None:
            payload["errorKind"] = self.error_kind.value
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> CoordinatorNotification:
        error_kind = payload.get("errorKind")
        return cls(
            task_id=str(payload["taskId"]),
            phase=str(payload["phase"]),
            role=str(payload["role"]),
            completion_type=CompletionType(payload["completionType"]),
            error=payload.get("error"),
            error_kind=ErrorKind(error_kind) if error_kind else None,
        )
