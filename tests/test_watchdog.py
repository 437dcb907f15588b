from __future__ import annotations

from dataclasses import replace

import allure
import pytest

from agent_relay.orchestrator.models import (
    CompletionType,
    CoordinatorNotification,
    ErrorKind,
    TaskCreate,
    TaskStatus,
    WorkerInvocation,
)
from agent_relay.orchestrator.repository import StateStore
from agent_relay.orchestrator.watchdog import RetryPolicy, Watchdog, WatchState

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Watchdog"),
]


@pytest.fixture()
def invocation(store: StateStore) -> WorkerInvocation:
    task = store.create_task(TaskCreate(subject="AAPL", owner="alice"))
    store.update_task(
        task.task_id,
        mutation=lambda current: replace(
            current,
            status=TaskStatus.RUNNING,
            current_phase="analysis",
        ),
    )
    return WorkerInvocation(
        task_id=task.task_id,
        subject="AAPL",
        owner="alice",
        phase="analysis",
        role="market",
        slot="market",
        attempt=0,
        max_attempts=2,
    )


class _Recorder:
    def __init__(self) -> None:
        self.reinvoked: list[WorkerInvocation] = []
        self.notifications: list[CoordinatorNotification] = []


@pytest.fixture()
def recorder() -> _Recorder:
    return _Recorder()


@pytest.fixture()
def watchdog(store: StateStore, scheduler, recorder: _Recorder) -> Watchdog:
    return Watchdog(
        store=store,
        scheduler=scheduler,
        policy=RetryPolicy(timeout_seconds=10, max_retries=1, retry_delay_seconds=1),
        reinvoke=recorder.reinvoked.append,
        notify=recorder.notifications.append,
    )


def test_watch_moves_from_scheduled_to_running_to_completed(
    watchdog: Watchdog,
    scheduler,
    recorder: _Recorder,
    invocation: WorkerInvocation,
) -> None:
    watchdog.arm(invocation)
    assert watchdog.state_of(invocation) == WatchState.SCHEDULED
    assert scheduler.pending == 1

    watchdog.mark_running(invocation)
    assert watchdog.state_of(invocation) == WatchState.RUNNING

    assert watchdog.disarm(invocation) == WatchState.COMPLETED
    assert watchdog.state_of(invocation) is None
    assert scheduler.pending == 0

    scheduler.advance(100)
    assert recorder.reinvoked == []
    assert recorder.notifications == []


def test_disarm_of_unwatched_slot_returns_none(
    watchdog: Watchdog,
    invocation: WorkerInvocation,
) -> None:
    assert watchdog.disarm(invocation) is None


def test_mark_running_ignores_superseded_attempt(
    watchdog: Watchdog,
    invocation: WorkerInvocation,
) -> None:
    watchdog.arm(invocation.next_attempt())

    watchdog.mark_running(invocation)

    assert watchdog.state_of(invocation) == WatchState.SCHEDULED


def test_deadline_times_out_then_retries_then_records_timeout(
    watchdog: Watchdog,
    scheduler,
    recorder: _Recorder,
    store: StateStore,
    invocation: WorkerInvocation,
) -> None:
    watchdog.arm(invocation)
    watchdog.mark_running(invocation)

    scheduler.advance(10)

    assert watchdog.state_of(invocation) == WatchState.TIMED_OUT
    events = [event.event_type for event in store.list_events(task_id=invocation.task_id)]
    assert "timeout_retry_scheduled" in events
    assert recorder.reinvoked == []

    scheduler.advance(1)

    assert [item.attempt for item in recorder.reinvoked] == [1]
    retry = recorder.reinvoked[0]
    watchdog.arm(retry)
    assert watchdog.state_of(retry) == WatchState.SCHEDULED

    scheduler.advance(10)

    assert watchdog.state_of(retry) is None
    result = store.require_task(invocation.task_id).result_for("analysis", "market")
    assert result is not None
    assert result.error_kind == ErrorKind.TIMEOUT
    assert result.attempt == 1
    assert "2 attempts (2/2)" in (result.error or "")
    assert len(recorder.notifications) == 1
    notification = recorder.notifications[0]
    assert notification.completion_type == CompletionType.ERROR
    assert notification.error_kind == ErrorKind.TIMEOUT
    assert scheduler.pending == 0


def test_deadline_for_cancelled_task_is_dropped(
    watchdog: Watchdog,
    scheduler,
    recorder: _Recorder,
    store: StateStore,
    invocation: WorkerInvocation,
) -> None:
    watchdog.arm(invocation)
    store.update_task(
        invocation.task_id,
        mutation=lambda current: replace(current, cancel_requested=True),
    )

    scheduler.advance(100)

    assert watchdog.state_of(invocation) is None
    assert recorder.reinvoked == []
    assert recorder.notifications == []
