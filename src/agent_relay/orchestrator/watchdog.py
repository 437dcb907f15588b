"""Per-invocation deadline tracking with bounded self-retry."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from agent_relay.orchestrator.models import (
    CompletionType,
    CoordinatorNotification,
    ErrorKind,
    Outcome,
    WorkerInvocation,
    WorkerResult,
)
from agent_relay.orchestrator.repository import StateStore
from agent_relay.storage.common import utc_now

logger = logging.getLogger(__name__)

WatchKey = tuple[str, str, str]


class WatchState(str, Enum):
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"


class TimerHandle(Protocol):
    def cancel(self) -> None:
        """Prevent the callback from firing if it has not fired yet."""


class Scheduler(Protocol):
    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` once after ``delay_seconds``."""


class ThreadingScheduler:
    """Scheduler backed by daemon ``threading.Timer`` threads."""

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(delay_seconds, callback)
        timer.daemon = True
        timer.start()
        return timer


@dataclass(slots=True)
class RetryPolicy:
    """Watchdog policy: per-attempt deadline and fixed-delay retries."""

    timeout_seconds: float = 180.0
    max_retries: int = 3
    retry_delay_seconds: float = 3.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


@dataclass(slots=True)
class _Watch:
    invocation: WorkerInvocation
    state: WatchState
    handle: TimerHandle | None = None


class Watchdog:
    """Re-invokes a worker whose result did not show up before its deadline.

    After ``max_retries`` re-invocations the slot is recorded as a ``timeout``
    error and the coordinator is notified, so one stuck worker never blocks
    the pipeline.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: StateStore,
        scheduler: Scheduler,
        policy: RetryPolicy,
        reinvoke: Callable[[WorkerInvocation], None],
        notify: Callable[[CoordinatorNotification], None],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.policy = policy
        self.reinvoke = reinvoke
        self.notify = notify
        self._clock = clock
        self._lock = threading.Lock()
        self._watches: dict[WatchKey, _Watch] = {}
        self._first_started: dict[WatchKey, float] = {}

    def arm(self, invocation: WorkerInvocation) -> None:
        """Start the deadline for one attempt, replacing any older attempt's watch."""

        key = _watch_key(invocation)
        watch = _Watch(invocation=invocation, state=WatchState.SCHEDULED)
        with self._lock:
            previous = self._watches.get(key)
            if previous is not None and previous.handle is not None:
                previous.handle.cancel()
            self._watches[key] = watch
            self._first_started.setdefault(key, self._clock())
        handle = self.scheduler.call_later(
            self.policy.timeout_seconds,
            lambda: self._on_deadline(key, invocation.attempt),
        )
        with self._lock:
            watch.handle = handle

    def mark_running(self, invocation: WorkerInvocation) -> None:
        with self._lock:
            watch = self._watches.get(_watch_key(invocation))
            if watch is not None and watch.invocation.attempt == invocation.attempt:
                watch.state = WatchState.RUNNING

    def disarm(self, invocation: WorkerInvocation) -> WatchState | None:
        """The slot has a recorded outcome; stop watching it.

        Returns the final state of the dropped watch, or ``None`` when the slot
        was not being watched.
        """

        key = _watch_key(invocation)
        with self._lock:
            watch = self._watches.pop(key, None)
            self._first_started.pop(key, None)
        if watch is not None:
            watch.state = WatchState.COMPLETED
            if watch.handle is not None:
                watch.handle.cancel()
            return watch.state
        return None

    def state_of(self, invocation: WorkerInvocation) -> WatchState | None:
        with self._lock:
            watch = self._watches.get(_watch_key(invocation))
            return watch.state if watch is not None else None

    def close(self) -> None:
        """Cancel every pending deadline."""

        with self._lock:
            watches = list(self._watches.values())
            self._watches.clear()
            self._first_started.clear()
        for watch in watches:
            if watch.handle is not None:
                watch.handle.cancel()

    def _on_deadline(self, key: WatchKey, attempt: int) -> None:
        with self._lock:
            watch = self._watches.get(key)
            if watch is None or watch.invocation.attempt != attempt:
                return
            watch.state = WatchState.TIMED_OUT
            first_started = self._first_started.get(key, self._clock())
        try:
            self._handle_timeout(key, watch.invocation, first_started)
        except Exception:
            logger.exception(
                "Watchdog failed to handle timeout for task %s %s/%s",
                watch.invocation.task_id,
                watch.invocation.phase,
                watch.invocation.slot,
            )

    def _handle_timeout(
        self,
        key: WatchKey,
        invocation: WorkerInvocation,
        first_started: float,
    ) -> None:
        task = self.store.get_task(invocation.task_id)
        if task is None or task.result_for(invocation.phase, invocation.slot) is not None:
            self._forget(key, invocation.attempt)
            return
        if task.cancel_requested or task.is_terminal:
            logger.info(
                "Task %s is %s; not retrying %s/%s",
                task.task_id,
                task.status.value,
                invocation.phase,
                invocation.slot,
            )
            self._forget(key, invocation.attempt)
            return

        if invocation.attempt < self.policy.max_retries:
            logger.warning(
                "Worker %s for task %s timed out on attempt %d/%d; retrying in %.1fs",
                invocation.slot,
                invocation.task_id,
                invocation.attempt + 1,
                self.policy.max_attempts,
                self.policy.retry_delay_seconds,
            )
            self.store.add_event(
                task_id=invocation.task_id,
                batch_id=task.batch_id,
                event_type="timeout_retry_scheduled",
                details={
                    "phase": invocation.phase,
                    "role": invocation.slot,
                    "attempt": invocation.attempt,
                    "next_attempt": invocation.attempt + 1,
                },
            )
            next_invocation = invocation.next_attempt()
            self.scheduler.call_later(
                self.policy.retry_delay_seconds,
                lambda: self._retry(next_invocation),
            )
            return

        self._forget(key, invocation.attempt)
        attempts = invocation.attempt + 1
        elapsed_minutes = (self._clock() - first_started) / 60.0
        message = (
            f"Worker timed out after {attempts} attempts "
            f"({attempts}/{self.policy.max_attempts}), "
            f"total time {elapsed_minutes:.1f} minutes"
        )
        logger.warning(
            "Task %s %s/%s: %s",
            task.task_id,
            invocation.phase,
            invocation.slot,
            message,
        )
        self.store.apply_result(
            task_id=invocation.task_id,
            phase=invocation.phase,
            key=invocation.slot,
            result=WorkerResult(
                role=invocation.role,
                timestamp=utc_now(),
                outcome=Outcome.ERROR,
                attempt=invocation.attempt,
                error_kind=ErrorKind.TIMEOUT,
                error=message,
            ),
        )
        self.notify(
            CoordinatorNotification(
                task_id=invocation.task_id,
                phase=invocation.phase,
                role=invocation.slot,
                completion_type=CompletionType.ERROR,
                error=message,
                error_kind=ErrorKind.TIMEOUT,
            ),
        )

    def _retry(self, invocation: WorkerInvocation) -> None:
        try:
            self.reinvoke(invocation)
        except Exception:
            logger.exception(
                "Watchdog failed to re-invoke %s for task %s (attempt %d)",
                invocation.slot,
                invocation.task_id,
                invocation.attempt,
            )

    def _forget(self, key: WatchKey, attempt: int) -> None:
        with self._lock:
            watch = self._watches.get(key)
            if watch is not None and watch.invocation.attempt == attempt:
                self._watches.pop(key, None)
                self._first_started.pop(key, None)


def _watch_key(invocation: WorkerInvocation) -> WatchKey:
    return (invocation.task_id, invocation.phase, invocation.slot)
