"""Task coordinator: drives one task through its phases.

Every entry point re-reads the persisted task and decides from that state plus
the incoming message only, so replayed or concurrent notifications are safe.
Hand-offs are claimed with a conditional update before anything is invoked.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace

from agent_relay.orchestrator.models import (
    CompletionType,
    CoordinatorNotification,
    ErrorKind,
    Outcome,
    TaskStatus,
    TaskView,
    WorkerInvocation,
    WorkerResult,
)
from agent_relay.orchestrator.repository import StateStore
from agent_relay.orchestrator.workflow import Phase, Slot, Workflow
from agent_relay.storage.common import utc_now

logger = logging.getLogger(__name__)

Invoke = Callable[[WorkerInvocation], None]
OnTaskTerminal = Callable[[TaskView], None]


def build_invocation(
    task: TaskView,
    phase: Phase,
    slot: Slot,
    *,
    attempt: int,
    max_attempts: int,
) -> WorkerInvocation:
    """Invocation request for ``slot`` carrying the round and prior successful payloads."""

    prior_results = {
        phase_name: {key: result.payload for key, result in entries.items() if result.succeeded}
        for phase_name, entries in task.phase_results.items()
    }
    context = {
        **task.context,
        "round": slot.round,
        "max_rounds": phase.max_rounds or 0,
        "prior_results": prior_results,
    }
    return WorkerInvocation(
        task_id=task.task_id,
        subject=task.subject,
        owner=task.owner,
        phase=phase.name,
        role=slot.role,
        slot=slot.key,
        attempt=attempt,
        max_attempts=max_attempts,
        context=context,
    )


class TaskCoordinator:
    """Decides which workers run next for a task and when the task is done."""

    def __init__(
        self,
        *,
        store: StateStore,
        workflow: Workflow,
        invoke: Invoke,
        on_task_terminal: OnTaskTerminal,
        max_attempts: int,
    ) -> None:
        self.store = store
        self.workflow = workflow
        self.invoke = invoke
        self.on_task_terminal = on_task_terminal
        self.max_attempts = max_attempts

    def start_task(self, task_id: str) -> list[WorkerInvocation]:
        """Move a pending task to its first phase and dispatch it."""

        task = self.store.require_task(task_id)
        if task.status == TaskStatus.PENDING and not task.cancel_requested:
            first = self.workflow.first_phase(task.skip_phases)
            update = self.store.update_task(
                task_id,
                precondition=lambda current: (
                    current.status == TaskStatus.PENDING and not current.cancel_requested
                ),
                mutation=lambda current: replace(
                    current,
                    status=TaskStatus.RUNNING,
                    current_phase=first.name,
                ),
                event_type="started",
                details={"phase": first.name},
            )
            if update.applied:
                logger.info("Task %s started (%s) in phase %s", task_id, task.subject, first.name)
        return self.advance_phase(task_id)

    def advance_phase(self, task_id: str) -> list[WorkerInvocation]:
        """Dispatch whatever is runnable now; advance or finish when the phase is done.

        Returns the invocations this call handed off. Calls that lose a race
        return an empty list; the winner does the hand-off.
        """

        invoked: list[WorkerInvocation] = []
        while True:
            task = self.store.require_task(task_id)
            if task.is_terminal:
                return invoked
            if task.cancel_requested:
                self._finish_cancelled(task_id)
                return invoked
            if task.status == TaskStatus.PENDING or task.current_phase is None:
                return invoked

            phase = self.workflow.phase(task.current_phase)
            progress = self.workflow.progress(task, phase)
            if phase.hard_required and progress.errored:
                summary = _error_summary(task, phase, progress.errored)
                if self._finish(task, phase, status=TaskStatus.ERROR, error_summary=summary):
                    return invoked
                continue
            if not progress.complete:
                invoked.extend(self._dispatch_wave(task, phase, progress.wave))
                return invoked

            next_phase = self.workflow.next_phase(phase.name, task.skip_phases)
            if next_phase is None:
                if self._finish(task, phase, status=TaskStatus.COMPLETED, error_summary=None):
                    return invoked
                continue

            update = self.store.update_task(
                task_id,
                precondition=lambda current, name=phase.name: (
                    current.status == TaskStatus.RUNNING
                    and not current.cancel_requested
                    and current.current_phase == name
                ),
                mutation=lambda current, name=next_phase.name: replace(current, current_phase=name),
                event_type="phase_advanced",
                details={"from": phase.name, "to": next_phase.name},
            )
            if update.applied:
                logger.info("Task %s advanced %s -> %s", task_id, phase.name, next_phase.name)

    def on_worker_terminal(self, notification: CoordinatorNotification) -> list[WorkerInvocation]:
        """Apply a worker's terminal notification, then continue the pipeline."""

        task = self.store.require_task(notification.task_id)
        if (
            notification.completion_type
            in {CompletionType.ERROR, CompletionType.INVOCATION_FAILED}
            and task.result_for(notification.phase, notification.role) is None
        ):
            self._record_reported_error(task, notification)
        return self.advance_phase(notification.task_id)

    def redispatch(self, invocation: WorkerInvocation) -> bool:
        """Claim and hand off a retry of ``invocation``; ``False`` when no longer needed."""

        previous_attempt = invocation.attempt - 1

        def still_needed(current: TaskView) -> bool:
            mark = current.dispatch_for(invocation.phase, invocation.slot)
            return (
                current.status == TaskStatus.RUNNING
                and not current.cancel_requested
                and current.result_for(invocation.phase, invocation.slot) is None
                and mark is not None
                and mark.attempt == previous_attempt
            )

        claim = self.store.mark_dispatched(
            task_id=invocation.task_id,
            phase=invocation.phase,
            key=invocation.slot,
            attempt=invocation.attempt,
            precondition=still_needed,
        )
        if not claim.applied:
            return False
        self.invoke(invocation)
        return True

    def request_cancel(self, task_id: str) -> TaskView:
        """Set ``cancel_requested`` and run the decision point that honors it."""

        update = self.store.update_task(
            task_id,
            precondition=lambda current: not current.cancel_requested and not current.is_terminal,
            mutation=lambda current: replace(current, cancel_requested=True),
            event_type="cancel_requested",
        )
        if update.applied:
            logger.info("Cancellation requested for task %s", task_id)
        self.advance_phase(task_id)
        return self.store.require_task(task_id)

    def retry_task(self, task_id: str) -> list[WorkerInvocation]:
        """Operator retry of a task that ended in error: re-run its failed roles."""

        task = self.store.require_task(task_id)
        if task.status != TaskStatus.ERROR:
            raise RuntimeError(f"Task cannot be retried from status={task.status.value}")
        if task.cancel_requested:
            raise RuntimeError(f"Task {task_id} was cancelled and cannot be retried")
        if task.batch_id is not None:
            batch = self.store.get_batch(task.batch_id)
            if batch is not None and batch.cancel_requested:
                raise RuntimeError(
                    f"Task {task_id} belongs to cancelled batch {task.batch_id}; cannot retry",
                )
            if batch is not None and batch.aggregate_triggered:
                raise RuntimeError(
                    f"Task {task_id} belongs to batch {task.batch_id} whose aggregate already ran",
                )

        phase_name = task.current_phase
        update = self.store.update_task(
            task_id,
            precondition=lambda current: (
                current.status == TaskStatus.ERROR and not current.cancel_requested
            ),
            mutation=lambda current: _reset_failed_roles(current, phase_name),
            event_type="retried",
            details={"phase": phase_name},
        )
        if not update.applied:
            raise RuntimeError(
                "Task state changed concurrently while retrying; "
                f"please retry command (task_id={task_id}).",
            )
        logger.info("Task %s retried from phase %s", task_id, phase_name)
        return self.advance_phase(task_id)

    def _dispatch_wave(
        self,
        task: TaskView,
        phase: Phase,
        wave: tuple[Slot, ...],
    ) -> list[WorkerInvocation]:
        invoked: list[WorkerInvocation] = []
        for slot in wave:
            if (
                task.result_for(phase.name, slot.key) is not None
                or task.dispatch_for(phase.name, slot.key) is not None
            ):
                continue
            claim = self.store.mark_dispatched(
                task_id=task.task_id,
                phase=phase.name,
                key=slot.key,
                attempt=0,
                precondition=lambda current, key=slot.key: (
                    current.status == TaskStatus.RUNNING
                    and not current.cancel_requested
                    and current.current_phase == phase.name
                    and current.dispatch_for(phase.name, key) is None
                    and current.result_for(phase.name, key) is None
                ),
            )
            if not claim.applied:
                continue
            invocation = build_invocation(
                claim.state,
                phase,
                slot,
                attempt=0,
                max_attempts=self.max_attempts,
            )
            logger.debug("Task %s dispatching %s/%s", task.task_id, phase.name, slot.key)
            self.invoke(invocation)
            invoked.append(invocation)
        return invoked

    def _finish(
        self,
        task: TaskView,
        phase: Phase,
        *,
        status: TaskStatus,
        error_summary: str | None,
    ) -> bool:
        update = self.store.update_task(
            task.task_id,
            precondition=lambda current: (
                current.status == TaskStatus.RUNNING
                and not current.cancel_requested
                and current.current_phase == phase.name
            ),
            mutation=lambda current: replace(
                current,
                status=status,
                error_summary=error_summary,
                finished_at=utc_now(),
            ),
            event_type=status.value,
            details={"phase": phase.name, "error_summary": error_summary}
            if error_summary
            else {"phase": phase.name},
        )
        if not update.applied:
            return False
        if status == TaskStatus.ERROR:
            logger.warning(
                "Task %s failed in phase %s: %s",
                task.task_id,
                phase.name,
                error_summary,
            )
        else:
            logger.info("Task %s %s", task.task_id, status.value)
        self.on_task_terminal(update.state)
        return True

    def _finish_cancelled(self, task_id: str) -> None:
        update = self.store.update_task(
            task_id,
            precondition=lambda current: not current.is_terminal,
            mutation=lambda current: replace(
                current,
                status=TaskStatus.CANCELLED,
                finished_at=utc_now(),
            ),
            event_type="cancelled",
        )
        if update.applied:
            logger.info("Task %s cancelled", task_id)
            self.on_task_terminal(update.state)

    def _record_reported_error(self, task: TaskView, notification: CoordinatorNotification) -> None:
        phase = self.workflow.phase(notification.phase)
        slot = phase.slot(notification.role)
        if slot is None:
            logger.warning(
                "Ignoring notification for unknown role %s in phase %s (task %s)",
                notification.role,
                notification.phase,
                notification.task_id,
            )
            return
        mark = task.dispatch_for(phase.name, slot.key)
        default_kind = (
            ErrorKind.UPSTREAM_ERROR
            if notification.completion_type == CompletionType.INVOCATION_FAILED
            else ErrorKind.OTHER
        )
        self.store.apply_result(
            task_id=task.task_id,
            phase=phase.name,
            key=slot.key,
            result=WorkerResult(
                role=slot.role,
                timestamp=utc_now(),
                outcome=Outcome.ERROR,
                attempt=mark.attempt if mark is not None else 0,
                error_kind=notification.error_kind or default_kind,
                error=notification.error
                or f"Worker {slot.key} reported {notification.completion_type.value}",
            ),
        )


def _reset_failed_roles(task: TaskView, phase_name: str | None) -> TaskView:
    results = {name: dict(entries) for name, entries in task.phase_results.items()}
    dispatched = {name: dict(entries) for name, entries in task.dispatched.items()}
    if phase_name is not None:
        for key, result in list(results.get(phase_name, {}).items()):
            if not result.succeeded:
                del results[phase_name][key]
                dispatched.get(phase_name, {}).pop(key, None)
    return replace(
        task,
        status=TaskStatus.RUNNING,
        phase_results=results,
        dispatched=dispatched,
        error_summary=None,
        finished_at=None,
    )


def _error_summary(task: TaskView, phase: Phase, errored: list[str]) -> str:
    parts = []
    for key in errored:
        result = task.result_for(phase.name, key)
        kind = result.error_kind.value if result is not None and result.error_kind else "other"
        parts.append(f"{key} ({kind})")
    return f"Phase {phase.name} failed: {', '.join(parts)}"
