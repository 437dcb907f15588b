"""Wiring of store, workers, watchdog and coordinators into chained hand-offs."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from datetime import timedelta
from typing import Any

from agent_relay.orchestrator.backend.base import AggregateAction, WorkerRegistry
from agent_relay.orchestrator.batch import BatchCoordinator
from agent_relay.orchestrator.coordinator import TaskCoordinator
from agent_relay.orchestrator.dispatch import (
    RETRYABLE_DELIVERY_ERRORS,
    Dispatcher,
    deliver_with_retry,
)
from agent_relay.orchestrator.errors import StoreUnavailableError
from agent_relay.orchestrator.models import (
    BatchView,
    CompletionType,
    CoordinatorNotification,
    InvocationResponse,
    TaskCreate,
    TaskView,
    WorkerInvocation,
)
from agent_relay.orchestrator.recovery import StaleTaskSweeper, SweepSummary
from agent_relay.orchestrator.repository import StateStore
from agent_relay.orchestrator.runtime import WorkerRuntime
from agent_relay.orchestrator.watchdog import RetryPolicy, Scheduler, Watchdog
from agent_relay.orchestrator.workflow import Workflow

logger = logging.getLogger(__name__)


class Orchestrator:
    """Entry point for submitting, cancelling and retrying tasks and batches.

    Nothing here supervises: each worker completion triggers the coordinator
    step that follows it through the dispatcher.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: StateStore,
        workflow: Workflow,
        registry: WorkerRegistry,
        dispatcher: Dispatcher,
        scheduler: Scheduler,
        aggregate_action: AggregateAction,
        policy: RetryPolicy | None = None,
        notify_max_retries: int = 2,
        notify_backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.workflow = workflow
        self.dispatcher = dispatcher
        self.policy = policy or RetryPolicy()
        self.notify_max_retries = notify_max_retries
        self.notify_backoff_seconds = notify_backoff_seconds
        self._sleep = sleep

        self.runtime = WorkerRuntime(
            store=store,
            registry=registry,
            workflow=workflow,
            notify=self.notify,
        )
        self.watchdog = Watchdog(
            store=store,
            scheduler=scheduler,
            policy=self.policy,
            reinvoke=self._reinvoke,
            notify=self.notify,
        )
        self.tasks = TaskCoordinator(
            store=store,
            workflow=workflow,
            invoke=self.invoke_worker,
            on_task_terminal=self._on_task_terminal,
            max_attempts=self.policy.max_attempts,
        )
        self.batches = BatchCoordinator(
            store=store,
            workflow=workflow,
            aggregate_action=aggregate_action,
            start_task=self._submit_start,
            cancel_task=self.tasks.request_cancel,
            run_aggregate=self._submit_aggregate,
        )
        self.sweeper = StaleTaskSweeper(
            store=store,
            workflow=workflow,
            coordinator=self.tasks,
            batches=self.batches,
            policy=self.policy,
        )

    def submit_task(
        self,
        subject: str,
        *,
        owner: str,
        context: dict[str, Any] | None = None,
        skip_phases: Iterable[str] = (),
    ) -> TaskView:
        """Create a standalone task and start it."""

        if not subject.strip():
            raise ValueError("Task subject must be non-empty.")
        skips = self.workflow.validate_skips(skip_phases)
        task = self.store.create_task(
            TaskCreate(
                subject=subject.strip(),
                owner=owner,
                context=dict(context or {}),
                skip_phases=skips,
            ),
        )
        self._submit_start(task.task_id)
        return self.store.require_task(task.task_id)

    def submit_batch(
        self,
        subjects: Iterable[str],
        *,
        owner: str,
        skip_flags: Iterable[str] = (),
        context: dict[str, Any] | None = None,
    ) -> BatchView:
        return self.batches.start_batch(
            subjects,
            owner=owner,
            skip_flags=skip_flags,
            context=context,
        )

    def cancel_task(self, task_id: str) -> TaskView:
        return self.tasks.request_cancel(task_id)

    def cancel_batch(self, batch_id: str) -> BatchView:
        return self.batches.cancel_batch(batch_id)

    def retry_task(self, task_id: str) -> TaskView:
        self.tasks.retry_task(task_id)
        return self.store.require_task(task_id)

    def sweep(self, *, stale_after: timedelta) -> SweepSummary:
        return self.sweeper.sweep(stale_after=stale_after)

    def invoke_worker(self, invocation: WorkerInvocation) -> None:
        """Arm the watchdog and hand the invocation to a worker."""

        self.watchdog.arm(invocation)
        self.dispatcher.submit(
            lambda: self._run_worker(invocation),
            label=(
                f"worker {invocation.task_id} {invocation.phase}/{invocation.slot} "
                f"attempt {invocation.attempt}"
            ),
        )

    def notify(self, notification: CoordinatorNotification) -> None:
        """Deliver a completion notification to the task coordinator, fire-and-forget."""

        self.dispatcher.submit(
            lambda: self._deliver(notification),
            label=f"notify {notification.task_id} {notification.phase}/{notification.role}",
        )

    def wait_for_task(
        self,
        task_id: str,
        *,
        timeout_seconds: float,
        poll_seconds: float = 0.2,
    ) -> TaskView:
        """Poll until the task is terminal or the timeout elapses; returns the last state."""

        deadline = time.monotonic() + timeout_seconds
        task = self.store.require_task(task_id)
        while not task.is_terminal and time.monotonic() < deadline:
            self._sleep(poll_seconds)
            task = self.store.require_task(task_id)
        return task

    def wait_for_batch(
        self,
        batch_id: str,
        *,
        timeout_seconds: float,
        poll_seconds: float = 0.2,
    ) -> BatchView:
        deadline = time.monotonic() + timeout_seconds
        batch = self.store.require_batch(batch_id)
        while not batch.is_terminal and time.monotonic() < deadline:
            self._sleep(poll_seconds)
            batch = self.store.require_batch(batch_id)
        return batch

    def close(self) -> None:
        self.watchdog.close()

    def _run_worker(self, invocation: WorkerInvocation) -> InvocationResponse:
        self.watchdog.mark_running(invocation)
        try:
            response = self.runtime.execute(invocation)
        except Exception as error:  # noqa: BLE001
            logger.exception(
                "Invocation of %s for task %s failed (attempt %d)",
                invocation.slot,
                invocation.task_id,
                invocation.attempt,
            )
            self.watchdog.disarm(invocation)
            self.notify(
                CoordinatorNotification(
                    task_id=invocation.task_id,
                    phase=invocation.phase,
                    role=invocation.slot,
                    completion_type=CompletionType.INVOCATION_FAILED,
                    error=f"Invocation failed: {error}",
                ),
            )
            return InvocationResponse(success=False)
        if not response.retry_scheduled:
            self.watchdog.disarm(invocation)
        return response

    def _reinvoke(self, invocation: WorkerInvocation) -> None:
        if not self.tasks.redispatch(invocation):
            self.watchdog.disarm(invocation)

    def _deliver(self, notification: CoordinatorNotification) -> None:
        label = f"notification {notification.task_id} {notification.phase}/{notification.role}"
        try:
            deliver_with_retry(
                lambda: self.tasks.on_worker_terminal(notification),
                max_retries=self.notify_max_retries,
                backoff_seconds=self.notify_backoff_seconds,
                label=label,
                sleep=self._sleep,
            )
        except RETRYABLE_DELIVERY_ERRORS as error:
            logger.error("Coordinator notification lost after retries: %s (%s)", label, error)
            self._record_lost_notification(notification, error)

    def _record_lost_notification(
        self,
        notification: CoordinatorNotification,
        error: Exception,
    ) -> None:
        try:
            self.store.add_event(
                task_id=notification.task_id,
                event_type="notification_failed",
                details={**notification.to_payload(), "error": str(error)},
            )
        except StoreUnavailableError:
            logger.warning(
                "Could not record lost notification for task %s; the stale sweep will recover it",
                notification.task_id,
            )

    def _on_task_terminal(self, task: TaskView) -> None:
        batch_id = task.batch_id
        if batch_id is None:
            return
        self.dispatcher.submit(
            lambda: deliver_with_retry(
                lambda: self.batches.on_task_terminal(batch_id, task.task_id),
                max_retries=self.notify_max_retries,
                backoff_seconds=self.notify_backoff_seconds,
                label=f"batch {batch_id} fan-in from {task.task_id}",
                sleep=self._sleep,
            ),
            label=f"batch {batch_id} fan-in from {task.task_id}",
        )

    def _submit_start(self, task_id: str) -> None:
        self.dispatcher.submit(
            lambda: deliver_with_retry(
                lambda: self.tasks.start_task(task_id),
                max_retries=self.notify_max_retries,
                backoff_seconds=self.notify_backoff_seconds,
                label=f"start {task_id}",
                sleep=self._sleep,
            ),
            label=f"start {task_id}",
        )

    def _submit_aggregate(self, batch_id: str) -> None:
        self.dispatcher.submit(
            lambda: deliver_with_retry(
                lambda: self.batches.execute_aggregate(batch_id),
                max_retries=self.notify_max_retries,
                backoff_seconds=self.notify_backoff_seconds,
                label=f"aggregate {batch_id}",
                sleep=self._sleep,
            ),
            label=f"aggregate {batch_id}",
        )
