"""Conditional-update state store for tasks and batches."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, col, select

from agent_relay.orchestrator.errors import (
    BatchNotFoundError,
    ConcurrentUpdateError,
    StoreUnavailableError,
    TaskNotFoundError,
)
from agent_relay.orchestrator.models import (
    TERMINAL_TASK_STATUSES,
    BatchCreate,
    BatchStatus,
    BatchView,
    DispatchMark,
    EventView,
    TaskCreate,
    TaskStatus,
    TaskView,
    UpdateResult,
    WorkerResult,
    should_replace_result,
)
from agent_relay.storage.alembic_runner import upgrade_head
from agent_relay.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_relay.storage.sqlmodel_models import BatchRecord, OrchestrationEvent, TaskRecord

logger = logging.getLogger(__name__)

DEFAULT_MAX_UPDATE_ATTEMPTS = 25

TaskPredicate = Callable[[TaskView], bool]
TaskMutation = Callable[[TaskView], TaskView]
BatchPredicate = Callable[[BatchView], bool]
BatchMutation = Callable[[BatchView], BatchView]


class StateStore:
    """Task/batch persistence facade backed by SQLModel + SQLite.

    Every correctness-relevant write goes through :meth:`update_task`,
    :meth:`update_batch` or :meth:`trigger_aggregate`, which only apply when the
    row still matches what the caller's decision was based on.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5000,
        max_update_attempts: int = DEFAULT_MAX_UPDATE_ATTEMPTS,
    ) -> None:
        self.db_path = db_path
        self.max_update_attempts = max_update_attempts
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- creation -----------------------------------------------------------------

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Create a pending task."""

        with self._session() as session:
            row = self._new_task_row(payload)
            session.add(row)
            self._add_event(
                session=session,
                task_id=row.task_id,
                batch_id=row.batch_id,
                event_type="created",
                status_from=None,
                status_to=TaskStatus.PENDING.value,
                details={"subject": payload.subject},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def create_batch(self, payload: BatchCreate) -> tuple[BatchView, list[TaskView]]:
        """Create a pending batch and one pending task per subject in one transaction."""

        batch_id = payload.batch_id or str(uuid4())
        task_payloads = [
            TaskCreate(
                subject=subject,
                owner=payload.owner,
                task_id=str(uuid4()),
                batch_id=batch_id,
                context=dict(payload.context),
                skip_phases=payload.skip_flags,
            )
            for subject in payload.subjects
        ]
        now = utc_now()
        with self._session() as session:
            batch_row = BatchRecord(
                batch_id=batch_id,
                owner=payload.owner,
                status=BatchStatus.PENDING.value,
                task_ids_json=json.dumps([item.task_id for item in task_payloads]),
                task_count=len(task_payloads),
                skip_flags_json=json.dumps(list(payload.skip_flags)),
                created_at=now,
                updated_at=now,
            )
            session.add(batch_row)
            task_rows = [self._new_task_row(item) for item in task_payloads]
            for row in task_rows:
                session.add(row)
            self._add_event(
                session=session,
                task_id=None,
                batch_id=batch_id,
                event_type="created",
                status_from=None,
                status_to=BatchStatus.PENDING.value,
                details={"subjects": list(payload.subjects)},
            )
            session.commit()
            session.refresh(batch_row)
            for row in task_rows:
                session.refresh(row)
            return _to_batch_view(batch_row), [_to_task_view(row) for row in task_rows]

    # -- reads --------------------------------------------------------------------

    def get_task(self, task_id: str) -> TaskView | None:
        with self._session() as session:
            statement = select(TaskRecord).where(TaskRecord.task_id == task_id)
            row = session.exec(statement).one_or_none()
            return _to_task_view(row) if row is not None else None

    def require_task(self, task_id: str) -> TaskView:
        task = self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return task

    def get_batch(self, batch_id: str) -> BatchView | None:
        with self._session() as session:
            row = session.exec(
                select(BatchRecord).where(BatchRecord.batch_id == batch_id),
            ).one_or_none()
            return _to_batch_view(row) if row is not None else None

    def require_batch(self, batch_id: str) -> BatchView:
        batch = self.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Batch not found: {batch_id}")
        return batch

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status."""

        with self._session() as session:
            statement = select(TaskRecord).order_by(col(TaskRecord.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(TaskRecord.status == status.value)
            rows = session.exec(statement).all()
            return [_to_task_view(row) for row in rows]

    def list_batch_tasks(self, batch_id: str) -> list[TaskView]:
        """Member tasks of a batch in the order the batch lists them."""

        batch = self.require_batch(batch_id)
        with self._session() as session:
            rows = session.exec(
                select(TaskRecord).where(TaskRecord.batch_id == batch_id),
            ).all()
            by_id = {row.task_id: _to_task_view(row) for row in rows}
        return [by_id[task_id] for task_id in batch.task_ids if task_id in by_id]

    def list_batches(
        self,
        *,
        status: BatchStatus | None = None,
        limit: int = 50,
    ) -> list[BatchView]:
        with self._session() as session:
            statement = (
                select(BatchRecord).order_by(col(BatchRecord.created_at).desc()).limit(limit)
            )
            if status is not None:
                statement = statement.where(BatchRecord.status == status.value)
            rows = session.exec(statement).all()
            return [_to_batch_view(row) for row in rows]

    def list_stale_tasks(
        self,
        *,
        updated_before: datetime,
        statuses: Iterable[TaskStatus] = (TaskStatus.RUNNING,),
    ) -> list[TaskView]:
        """Tasks in ``statuses`` whose record was not touched since ``updated_before``."""

        status_values = [status.value for status in statuses]
        with self._session() as session:
            rows = session.exec(
                select(TaskRecord)
                .where(
                    col(TaskRecord.status).in_(status_values),
                    col(TaskRecord.updated_at) < to_db_datetime(updated_before),
                )
                .order_by(col(TaskRecord.updated_at).asc()),
            ).all()
            return [_to_task_view(row) for row in rows]

    def count_terminal_tasks(self, batch_id: str) -> int:
        with self._session() as session:
            return int(
                session.exec(
                    sa_select(func.count())
                    .select_from(TaskRecord)
                    .where(
                        col(TaskRecord.batch_id) == batch_id,
                        col(TaskRecord.status).in_(_terminal_status_values()),
                    ),
                ).one()[0],
            )

    def list_events(
        self,
        *,
        task_id: str | None = None,
        batch_id: str | None = None,
    ) -> list[EventView]:
        """Audit trail for a task or a batch, oldest first."""

        with self._session() as session:
            statement = select(OrchestrationEvent).order_by(
                col(OrchestrationEvent.created_at).asc(),
                col(OrchestrationEvent.id).asc(),
            )
            if task_id is not None:
                statement = statement.where(OrchestrationEvent.task_id == task_id)
            if batch_id is not None:
                statement = statement.where(OrchestrationEvent.batch_id == batch_id)
            rows = session.exec(statement).all()

        events: list[EventView] = []
        for row in rows:
            details: dict[str, Any] = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                EventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    batch_id=row.batch_id,
                    event_type=row.event_type,
                    status_from=row.status_from,
                    status_to=row.status_to,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return events

    # -- conditional updates --------------------------------------------------------

    def update_task(  # noqa: PLR0913
        self,
        task_id: str,
        *,
        mutation: TaskMutation,
        precondition: TaskPredicate | None = None,
        event_type: str | None = None,
        details: dict[str, object] | None = None,
    ) -> UpdateResult[TaskView]:
        """Compare-and-set a task.

        Reads the row, evaluates ``precondition`` on it and, when it holds, writes
        ``mutation(row)`` only if nobody else wrote in between (``version`` check).
        Lost races re-read and re-evaluate the precondition.
        """

        for _ in range(self.max_update_attempts):
            with self._session() as session:
                row = session.exec(
                    select(TaskRecord).where(TaskRecord.task_id == task_id),
                ).one_or_none()
                if row is None:
                    raise TaskNotFoundError(f"Task not found: {task_id}")
                current = _to_task_view(row)
                if precondition is not None and not precondition(current):
                    return UpdateResult(applied=False, state=current)

                updated = mutation(current)
                # cancellation is monotonic regardless of what the mutation did
                updated = replace(
                    updated,
                    cancel_requested=current.cancel_requested or updated.cancel_requested,
                )
                now = utc_now()
                result = session.exec(
                    sa_update(TaskRecord)
                    .where(
                        col(TaskRecord.task_id) == task_id,
                        col(TaskRecord.version) == current.version,
                    )
                    .values(
                        **_task_values(updated),
                        version=current.version + 1,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                if event_type is not None:
                    self._add_event(
                        session=session,
                        task_id=task_id,
                        batch_id=current.batch_id,
                        event_type=event_type,
                        status_from=current.status.value,
                        status_to=updated.status.value,
                        details=details or {},
                    )
                session.commit()
            return UpdateResult(
                applied=True,
                state=replace(updated, version=current.version + 1, updated_at=now),
            )

        raise ConcurrentUpdateError(
            "Task state changed concurrently too many times; "
            f"please retry (task_id={task_id}).",
        )

    def update_batch(  # noqa: PLR0913
        self,
        batch_id: str,
        *,
        mutation: BatchMutation,
        precondition: BatchPredicate | None = None,
        event_type: str | None = None,
        details: dict[str, object] | None = None,
    ) -> UpdateResult[BatchView]:
        """Compare-and-set a batch; same contract as :meth:`update_task`."""

        for _ in range(self.max_update_attempts):
            with self._session() as session:
                row = session.exec(
                    select(BatchRecord).where(BatchRecord.batch_id == batch_id),
                ).one_or_none()
                if row is None:
                    raise BatchNotFoundError(f"Batch not found: {batch_id}")
                current = _to_batch_view(row)
                if precondition is not None and not precondition(current):
                    return UpdateResult(applied=False, state=current)

                updated = mutation(current)
                updated = replace(
                    updated,
                    cancel_requested=current.cancel_requested or updated.cancel_requested,
                    aggregate_triggered=current.aggregate_triggered or updated.aggregate_triggered,
                )
                now = utc_now()
                result = session.exec(
                    sa_update(BatchRecord)
                    .where(
                        col(BatchRecord.batch_id) == batch_id,
                        col(BatchRecord.version) == current.version,
                    )
                    .values(
                        **_batch_values(updated),
                        version=current.version + 1,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                if event_type is not None:
                    self._add_event(
                        session=session,
                        task_id=None,
                        batch_id=batch_id,
                        event_type=event_type,
                        status_from=current.status.value,
                        status_to=updated.status.value,
                        details=details or {},
                    )
                session.commit()
            return UpdateResult(
                applied=True,
                state=replace(updated, version=current.version + 1, updated_at=now),
            )

        raise ConcurrentUpdateError(
            "Batch state changed concurrently too many times; "
            f"please retry (batch_id={batch_id}).",
        )

    def apply_result(
        self,
        *,
        task_id: str,
        phase: str,
        key: str,
        result: WorkerResult,
    ) -> UpdateResult[TaskView]:
        """Store a worker result under ``(phase, key)``; replaying the same result is a no-op."""

        return self.update_task(
            task_id,
            precondition=lambda task: should_replace_result(task.result_for(phase, key), result),
            mutation=lambda task: task.with_result(phase, key, result),
            event_type="result_applied",
            details={
                "phase": phase,
                "role": key,
                "outcome": result.outcome.value,
                "attempt": result.attempt,
                "error_kind": result.error_kind.value if result.error_kind else None,
            },
        )

    def mark_dispatched(
        self,
        *,
        task_id: str,
        phase: str,
        key: str,
        attempt: int,
        precondition: TaskPredicate,
    ) -> UpdateResult[TaskView]:
        """Record that ``(phase, key)`` was handed to a worker at ``attempt``."""

        mark = DispatchMark(attempt=attempt, dispatched_at=utc_now())
        return self.update_task(
            task_id,
            precondition=precondition,
            mutation=lambda task: task.with_dispatch(phase, key, mark),
            event_type="dispatched" if attempt == 0 else "redispatched",
            details={"phase": phase, "role": key, "attempt": attempt},
        )

    def trigger_aggregate(self, batch_id: str) -> bool:
        """Flip ``aggregate_triggered`` iff every member task is terminal and it was unset.

        The completion count and the guard flag are evaluated inside the same
        UPDATE statement, so exactly one caller observes ``True``.
        """

        terminal_count = (
            sa_select(func.count())
            .select_from(TaskRecord)
            .where(
                col(TaskRecord.batch_id) == batch_id,
                col(TaskRecord.status).in_(_terminal_status_values()),
            )
            .scalar_subquery()
        )
        now = utc_now()
        with self._session() as session:
            result = session.exec(
                sa_update(BatchRecord)
                .where(
                    col(BatchRecord.batch_id) == batch_id,
                    col(BatchRecord.status) == BatchStatus.RUNNING.value,
                    col(BatchRecord.aggregate_triggered).is_(False),
                    col(BatchRecord.cancel_requested).is_(False),
                    col(BatchRecord.task_count) == terminal_count,
                )
                .values(
                    aggregate_triggered=True,
                    status=BatchStatus.AGGREGATING.value,
                    version=col(BatchRecord.version) + 1,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False

            self._add_event(
                session=session,
                task_id=None,
                batch_id=batch_id,
                event_type="aggregate_triggered",
                status_from=BatchStatus.RUNNING.value,
                status_to=BatchStatus.AGGREGATING.value,
                details={},
            )
            session.commit()
        return True

    def add_event(  # noqa: PLR0913
        self,
        *,
        event_type: str,
        task_id: str | None = None,
        batch_id: str | None = None,
        status_from: str | None = None,
        status_to: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Append an audit entry outside of any state transition."""

        with self._session() as session:
            self._add_event(
                session=session,
                task_id=task_id,
                batch_id=batch_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details or {},
            )
            session.commit()

    # -- internals ----------------------------------------------------------------

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except OperationalError as error:
            logger.warning("State store operation failed, outcome unknown: %s", error)
            raise StoreUnavailableError(f"State store unavailable: {error}") from error

    def _new_task_row(self, payload: TaskCreate) -> TaskRecord:
        now = utc_now()
        return TaskRecord(
            task_id=payload.task_id or str(uuid4()),
            owner=payload.owner,
            subject=payload.subject,
            batch_id=payload.batch_id,
            status=TaskStatus.PENDING.value,
            current_phase=None,
            context_json=json.dumps(payload.context, ensure_ascii=False, sort_keys=True),
            skip_phases_json=json.dumps(list(payload.skip_phases)),
            created_at=now,
            updated_at=now,
        )

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str | None,
        batch_id: str | None,
        event_type: str,
        status_from: str | None,
        status_to: str | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            OrchestrationEvent(
                task_id=task_id,
                batch_id=batch_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _terminal_status_values() -> list[str]:
    return sorted(status.value for status in TERMINAL_TASK_STATUSES)


def _task_values(task: TaskView) -> dict[str, object]:
    return {
        "status": task.status.value,
        "current_phase": task.current_phase,
        "phase_results_json": json.dumps(
            {
                phase: {key: result.to_dict() for key, result in entries.items()}
                for phase, entries in task.phase_results.items()
            },
            ensure_ascii=False,
            sort_keys=True,
        ),
        "dispatched_json": json.dumps(
            {
                phase: {key: mark.to_dict() for key, mark in entries.items()}
                for phase, entries in task.dispatched.items()
            },
            sort_keys=True,
        ),
        "context_json": json.dumps(task.context, ensure_ascii=False, sort_keys=True),
        "skip_phases_json": json.dumps(list(task.skip_phases)),
        "cancel_requested": task.cancel_requested,
        "error_summary": task.error_summary,
        "finished_at": to_db_datetime(task.finished_at) if task.finished_at is not None else None,
    }


def _batch_values(batch: BatchView) -> dict[str, object]:
    return {
        "status": batch.status.value,
        "aggregate_triggered": batch.aggregate_triggered,
        "cancel_requested": batch.cancel_requested,
        "aggregate_result_json": _dump_optional_json(batch.aggregate_result),
        "error_summary": batch.error_summary,
        "finished_at": to_db_datetime(batch.finished_at) if batch.finished_at is not None else None,
    }


def _dump_optional_json(value: dict[str, Any] | None) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _to_task_view(row: TaskRecord) -> TaskView:
    raw_results = json.loads(row.phase_results_json or "{}")
    raw_dispatched = json.loads(row.dispatched_json or "{}")
    return TaskView(
        task_id=row.task_id,
        owner=row.owner,
        subject=row.subject,
        batch_id=row.batch_id,
        status=TaskStatus(row.status),
        current_phase=row.current_phase,
        phase_results={
            phase: {key: WorkerResult.from_dict(value) for key, value in entries.items()}
            for phase, entries in raw_results.items()
        },
        dispatched={
            phase: {key: DispatchMark.from_dict(value) for key, value in entries.items()}
            for phase, entries in raw_dispatched.items()
        },
        context=json.loads(row.context_json or "{}"),
        skip_phases=tuple(json.loads(row.skip_phases_json or "[]")),
        cancel_requested=bool(row.cancel_requested),
        version=row.version,
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
    )


def _to_batch_view(row: BatchRecord) -> BatchView:
    return BatchView(
        batch_id=row.batch_id,
        owner=row.owner,
        status=BatchStatus(row.status),
        task_ids=tuple(json.loads(row.task_ids_json)),
        task_count=row.task_count,
        skip_flags=tuple(json.loads(row.skip_flags_json or "[]")),
        aggregate_triggered=bool(row.aggregate_triggered),
        cancel_requested=bool(row.cancel_requested),
        aggregate_result=(
            json.loads(row.aggregate_result_json) if row.aggregate_result_json else None
        ),
        error_summary=row.error_summary,
        version=row.version,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
    )
