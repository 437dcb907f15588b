"""Worker execution contract: run one invocation, persist its result, notify the coordinator."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from agent_relay.orchestrator.backend.base import WorkerRegistry
from agent_relay.orchestrator.errors import StoreUnavailableError, WorkflowConfigError
from agent_relay.orchestrator.failure_classifier import classify_exception
from agent_relay.orchestrator.models import (
    CompletionType,
    CoordinatorNotification,
    ErrorKind,
    InvocationResponse,
    Outcome,
    TaskView,
    WorkerInvocation,
    WorkerResult,
)
from agent_relay.orchestrator.repository import StateStore
from agent_relay.orchestrator.workflow import Workflow
from agent_relay.storage.common import utc_now

logger = logging.getLogger(__name__)

Notify = Callable[[CoordinatorNotification], None]


class WorkerRuntime:
    """Wraps worker handlers so every invocation ends in a structured outcome.

    Handler failures are classified and recorded as error results, never
    raised. A handler returning ``None`` leaves nothing persisted and reports
    ``retry_scheduled`` so the watchdog owns the next attempt.
    """

    def __init__(
        self,
        *,
        store: StateStore,
        registry: WorkerRegistry,
        workflow: Workflow,
        notify: Notify,
    ) -> None:
        self.store = store
        self.registry = registry
        self.workflow = workflow
        self.notify = notify

    def execute(self, invocation: WorkerInvocation) -> InvocationResponse:
        try:
            task = self.store.get_task(invocation.task_id)
        except StoreUnavailableError:
            return InvocationResponse(success=False, retry_scheduled=True)
        if task is None:
            return _rejected(f"Task not found: {invocation.task_id}")
        try:
            phase = self.workflow.phase(invocation.phase)
        except WorkflowConfigError as error:
            return _rejected(str(error))
        if phase.slot(invocation.slot) is None:
            return _rejected(f"Role {invocation.slot} is not part of phase {phase.name}")

        existing = task.result_for(invocation.phase, invocation.slot)
        if existing is not None and existing.succeeded:
            logger.info(
                "Result already recorded for %s %s/%s; skipping attempt %d",
                invocation.task_id,
                invocation.phase,
                invocation.slot,
                invocation.attempt,
            )
            return InvocationResponse(success=True, result=_result_envelope(existing))
        if task.cancel_requested or task.is_terminal:
            logger.info(
                "Task %s is %s (cancel_requested=%s); not running %s/%s",
                task.task_id,
                task.status.value,
                task.cancel_requested,
                invocation.phase,
                invocation.slot,
            )
            return InvocationResponse(success=False)

        result = self._run_handler(invocation)
        if result is None:
            return InvocationResponse(success=False, retry_scheduled=True)

        try:
            applied = self.store.apply_result(
                task_id=invocation.task_id,
                phase=invocation.phase,
                key=invocation.slot,
                result=result,
            )
        except StoreUnavailableError:
            logger.warning(
                "Could not persist %s/%s for task %s; leaving it to the watchdog",
                invocation.phase,
                invocation.slot,
                invocation.task_id,
            )
            return InvocationResponse(success=False, retry_scheduled=True)

        stored = applied.state.result_for(invocation.phase, invocation.slot) or result
        self.notify(
            CoordinatorNotification(
                task_id=invocation.task_id,
                phase=invocation.phase,
                role=invocation.slot,
                completion_type=self._completion_type(applied.state, invocation, stored),
                error=stored.error,
                error_kind=stored.error_kind,
            ),
        )
        return InvocationResponse(success=stored.succeeded, result=_result_envelope(stored))

    def _run_handler(self, invocation: WorkerInvocation) -> WorkerResult | None:
        started = time.monotonic()
        try:
            handler = self.registry.resolve(invocation.role)
            payload = handler(invocation)
        except Exception as error:  # noqa: BLE001
            classification = classify_exception(error)
            logger.warning(
                "Worker %s failed for task %s (attempt %d, %s): %s",
                invocation.slot,
                invocation.task_id,
                invocation.attempt,
                classification.error_kind.value,
                error,
            )
            return WorkerResult(
                role=invocation.role,
                timestamp=utc_now(),
                outcome=Outcome.ERROR,
                attempt=invocation.attempt,
                error_kind=classification.error_kind,
                error=str(error) or type(error).__name__,
            )

        if payload is None:
            logger.warning(
                "Worker %s returned no result for task %s (attempt %d)",
                invocation.slot,
                invocation.task_id,
                invocation.attempt,
            )
            return None
        logger.debug(
            "Worker %s finished for task %s in %.2fs",
            invocation.slot,
            invocation.task_id,
            time.monotonic() - started,
        )
        return WorkerResult(
            role=invocation.role,
            timestamp=utc_now(),
            outcome=Outcome.SUCCESS,
            attempt=invocation.attempt,
            payload=dict(payload),
        )

    def _completion_type(
        self,
        task: TaskView,
        invocation: WorkerInvocation,
        result: WorkerResult,
    ) -> CompletionType:
        if not result.succeeded:
            return CompletionType.ERROR
        progress = self.workflow.progress(task, self.workflow.phase(invocation.phase))
        return CompletionType.LAST_IN_PHASE if progress.complete else CompletionType.NORMAL


def _result_envelope(result: WorkerResult) -> dict[str, Any]:
    envelope: dict[str, Any] = {
        "payload": result.payload,
        "outcome": result.outcome.value,
        "attempt": result.attempt,
    }
    if result.error_kind is not None:
        envelope["errorKind"] = result.error_kind.value
    if result.error is not None:
        envelope["error"] = result.error
    return envelope


def _rejected(message: str) -> InvocationResponse:
    return InvocationResponse(
        success=False,
        result={"payload": {}, "errorKind": ErrorKind.OTHER.value, "error": message},
    )
