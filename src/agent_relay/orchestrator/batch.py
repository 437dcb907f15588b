"""Batch coordinator: fan out one task per subject, fan in to a single aggregate action."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import replace
from typing import Any

from agent_relay.orchestrator.backend.base import AggregateAction
from agent_relay.orchestrator.failure_classifier import classify_exception
from agent_relay.orchestrator.models import BatchCreate, BatchStatus, BatchView, TaskView
from agent_relay.orchestrator.repository import StateStore
from agent_relay.orchestrator.workflow import Workflow
from agent_relay.storage.common import utc_now

logger = logging.getLogger(__name__)


class BatchCoordinator:
    """Owns batch lifecycle; the aggregate fires once, from exactly one task's completion."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: StateStore,
        workflow: Workflow,
        aggregate_action: AggregateAction,
        start_task: Callable[[str], None],
        cancel_task: Callable[[str], TaskView],
        run_aggregate: Callable[[str], None],
    ) -> None:
        self.store = store
        self.workflow = workflow
        self.aggregate_action = aggregate_action
        self.start_task = start_task
        self.cancel_task = cancel_task
        self.run_aggregate = run_aggregate

    def start_batch(
        self,
        subjects: Iterable[str],
        *,
        owner: str,
        skip_flags: Iterable[str] = (),
        context: dict[str, Any] | None = None,
    ) -> BatchView:
        """Create the batch and its tasks, mark it running and start every task."""

        normalized = tuple(subject.strip() for subject in subjects)
        if not normalized:
            raise ValueError("A batch needs at least one subject.")
        if any(not subject for subject in normalized):
            raise ValueError("Batch subjects must be non-empty.")
        duplicates = sorted({subject for subject in normalized if normalized.count(subject) > 1})
        if duplicates:
            raise ValueError(f"Duplicate batch subjects: {', '.join(duplicates)}")
        skips = self.workflow.validate_skips(skip_flags)

        batch, tasks = self.store.create_batch(
            BatchCreate(
                owner=owner,
                subjects=normalized,
                skip_flags=skips,
                context=dict(context or {}),
            ),
        )
        update = self.store.update_batch(
            batch.batch_id,
            precondition=lambda current: current.status == BatchStatus.PENDING,
            mutation=lambda current: replace(current, status=BatchStatus.RUNNING),
            event_type="started",
            details={"task_count": len(tasks)},
        )
        logger.info("Batch %s started with %d tasks", batch.batch_id, len(tasks))
        for task in tasks:
            self.start_task(task.task_id)
        return update.state

    def on_task_terminal(self, batch_id: str, task_id: str) -> bool:
        """Fire the aggregate if this completion made every member task terminal.

        Returns ``True`` only for the single call that flipped the trigger guard.
        """

        triggered = self.store.trigger_aggregate(batch_id)
        if triggered:
            logger.info("Batch %s: task %s completed the fan-in; aggregating", batch_id, task_id)
            self.run_aggregate(batch_id)
        return triggered

    def execute_aggregate(self, batch_id: str) -> BatchView:
        """Run the aggregate action for an aggregating batch and record its outcome."""

        batch = self.store.require_batch(batch_id)
        if batch.status != BatchStatus.AGGREGATING:
            return batch
        tasks = self.store.list_batch_tasks(batch_id)
        try:
            payload = self.aggregate_action(batch, tasks)
        except Exception as error:  # noqa: BLE001
            classification = classify_exception(error)
            summary = f"{classification.error_kind.value}: {error}"
            logger.warning("Batch %s aggregate failed: %s", batch_id, summary)
            update = self.store.update_batch(
                batch_id,
                precondition=lambda current: current.status == BatchStatus.AGGREGATING,
                mutation=lambda current: replace(
                    current,
                    status=BatchStatus.ERROR,
                    error_summary=summary,
                    finished_at=utc_now(),
                ),
                event_type="aggregate_failed",
                details=classification.to_event_details(),
            )
            return update.state

        update = self.store.update_batch(
            batch_id,
            precondition=lambda current: current.status == BatchStatus.AGGREGATING,
            mutation=lambda current: replace(
                current,
                status=BatchStatus.COMPLETED,
                aggregate_result=dict(payload),
                finished_at=utc_now(),
            ),
            event_type="aggregate_completed",
            details={"tasks": len(tasks)},
        )
        if update.applied:
            logger.info("Batch %s completed", batch_id)
        return update.state

    def cancel_batch(self, batch_id: str) -> BatchView:
        """Cancel the batch and request cancellation of every member task."""

        update = self.store.update_batch(
            batch_id,
            precondition=lambda current: (
                not current.is_terminal and current.status != BatchStatus.AGGREGATING
            ),
            mutation=lambda current: replace(
                current,
                status=BatchStatus.CANCELLED,
                cancel_requested=True,
                finished_at=utc_now(),
            ),
            event_type="cancelled",
        )
        if not update.state.cancel_requested:
            logger.info(
                "Batch %s is %s; cancellation has no effect",
                batch_id,
                update.state.status.value,
            )
            return update.state

        # replayed cancels propagate again
        logger.info(
            "Batch %s cancelled; propagating to %d tasks",
            batch_id,
            update.state.task_count,
        )
        for task_id in update.state.task_ids:
            self.cancel_task(task_id)
        return update.state
