"""Operator sweep for tasks whose in-memory deadlines were lost."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from agent_relay.orchestrator.batch import BatchCoordinator
from agent_relay.orchestrator.coordinator import TaskCoordinator, build_invocation
from agent_relay.orchestrator.models import (
    BatchStatus,
    CompletionType,
    CoordinatorNotification,
    ErrorKind,
    TaskStatus,
    TaskView,
)
from agent_relay.orchestrator.repository import StateStore
from agent_relay.orchestrator.watchdog import RetryPolicy
from agent_relay.orchestrator.workflow import Workflow
from agent_relay.storage.common import utc_now

logger = logging.getLogger(__name__)

STALE_BATCH_SCAN_LIMIT = 1000


@dataclass(slots=True)
class SweepSummary:
    scanned_tasks: int = 0
    redispatched: int = 0
    timed_out: int = 0
    rechecked_batches: int = 0
    aggregates_triggered: int = 0
    started_tasks: int = 0
    aggregates_resumed: int = 0


class StaleTaskSweeper:
    """Finds tasks and batches nobody advanced for a while and pushes them forward.

    Watchdog timers and queued hand-offs live in process memory; after a crash
    a task may never start and a dispatched slot may never get its deadline.
    The sweep starts stale pending tasks, replays lost deadlines from the
    persisted dispatch marks, re-runs the batch fan-in check and resumes
    aggregates that were claimed but never recorded.
    """

    def __init__(
        self,
        *,
        store: StateStore,
        workflow: Workflow,
        coordinator: TaskCoordinator,
        batches: BatchCoordinator,
        policy: RetryPolicy,
    ) -> None:
        self.store = store
        self.workflow = workflow
        self.coordinator = coordinator
        self.batches = batches
        self.policy = policy

    def sweep(self, *, stale_after: timedelta, now: datetime | None = None) -> SweepSummary:
        cutoff = (now or utc_now()) - stale_after
        summary = SweepSummary()
        triggered: set[str] = set()
        for task in self.store.list_stale_tasks(
            updated_before=cutoff,
            statuses=(TaskStatus.PENDING, TaskStatus.RUNNING),
        ):
            summary.scanned_tasks += 1
            if task.status == TaskStatus.PENDING:
                # start hand-off was lost
                logger.warning("Task %s never started; starting it now", task.task_id)
                self.coordinator.start_task(task.task_id)
                summary.started_tasks += 1
                continue
            if not task.cancel_requested:
                self._recover_slots(task, cutoff, summary)
            self.coordinator.advance_phase(task.task_id)

        for batch in self.store.list_batches(
            status=BatchStatus.RUNNING,
            limit=STALE_BATCH_SCAN_LIMIT,
        ):
            if batch.aggregate_triggered or batch.task_count == 0:
                continue
            if self.store.count_terminal_tasks(batch.batch_id) < batch.task_count:
                continue
            summary.rechecked_batches += 1
            if self.batches.on_task_terminal(batch.batch_id, batch.task_ids[-1]):
                summary.aggregates_triggered += 1
                triggered.add(batch.batch_id)

        for batch in self.store.list_batches(
            status=BatchStatus.AGGREGATING,
            limit=STALE_BATCH_SCAN_LIMIT,
        ):
            if batch.batch_id in triggered or batch.updated_at >= cutoff:
                continue
            logger.warning("Batch %s stuck in aggregating; re-running aggregate", batch.batch_id)
            self.batches.execute_aggregate(batch.batch_id)
            summary.aggregates_resumed += 1

        logger.info(
            "Sweep done: scanned=%d started=%d redispatched=%d timed_out=%d "
            "aggregates=%d resumed=%d",
            summary.scanned_tasks,
            summary.started_tasks,
            summary.redispatched,
            summary.timed_out,
            summary.aggregates_triggered,
            summary.aggregates_resumed,
        )
        return summary

    def _recover_slots(self, task: TaskView, cutoff: datetime, summary: SweepSummary) -> None:
        if task.current_phase is None:
            return
        phase = self.workflow.phase(task.current_phase)
        for slot in phase.slots():
            mark = task.dispatch_for(phase.name, slot.key)
            if mark is None or task.result_for(phase.name, slot.key) is not None:
                continue
            if mark.dispatched_at > cutoff:
                continue
            if mark.attempt < self.policy.max_retries:
                invocation = build_invocation(
                    task,
                    phase,
                    slot,
                    attempt=mark.attempt + 1,
                    max_attempts=self.policy.max_attempts,
                )
                if self.coordinator.redispatch(invocation):
                    logger.warning(
                        "Task %s %s/%s stale; re-dispatched as attempt %d",
                        task.task_id,
                        phase.name,
                        slot.key,
                        invocation.attempt,
                    )
                    summary.redispatched += 1
                continue

            attempts = mark.attempt + 1
            message = (
                f"Worker timed out after {attempts} attempts "
                f"({attempts}/{self.policy.max_attempts}); no result since "
                f"{mark.dispatched_at.isoformat()}"
            )
            self.coordinator.on_worker_terminal(
                CoordinatorNotification(
                    task_id=task.task_id,
                    phase=phase.name,
                    role=slot.key,
                    completion_type=CompletionType.ERROR,
                    error=message,
                    error_kind=ErrorKind.TIMEOUT,
                ),
            )
            summary.timed_out += 1
