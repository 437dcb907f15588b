from __future__ import annotations

import threading
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from agent_relay.orchestrator.errors import TaskNotFoundError
from agent_relay.orchestrator.models import (
    BatchCreate,
    BatchStatus,
    ErrorKind,
    Outcome,
    TaskCreate,
    TaskStatus,
    WorkerResult,
    should_replace_result,
)
from agent_relay.orchestrator.repository import StateStore
from agent_relay.storage.common import utc_now

pytestmark = [
    allure.epic("Orchestration State"),
    allure.feature("Conditional Updates"),
]


def _success(role: str = "macro", *, attempt: int = 0) -> WorkerResult:
    return WorkerResult(
        role=role,
        timestamp=utc_now(),
        outcome=Outcome.SUCCESS,
        attempt=attempt,
        payload={"summary": f"{role} ok"},
    )


def _error(role: str = "macro", *, kind: ErrorKind = ErrorKind.UPSTREAM_ERROR) -> WorkerResult:
    return WorkerResult(
        role=role,
        timestamp=utc_now(),
        outcome=Outcome.ERROR,
        attempt=0,
        error_kind=kind,
        error=f"{role} failed",
    )


def test_create_task_starts_pending_with_created_event(store: StateStore) -> None:
    task = store.create_task(
        TaskCreate(subject="AAPL", owner="alice", context={"horizon": "1d"}),
    )

    assert task.status == TaskStatus.PENDING
    assert task.current_phase is None
    assert task.context == {"horizon": "1d"}
    assert task.version == 0
    events = store.list_events(task_id=task.task_id)
    assert [event.event_type for event in events] == ["created"]


def test_require_task_raises_for_unknown_id(store: StateStore) -> None:
    with pytest.raises(TaskNotFoundError, match="missing-task"):
        store.require_task("missing-task")


def test_apply_result_is_idempotent(store: StateStore) -> None:
    task = store.create_task(TaskCreate(subject="AAPL", owner="alice"))
    result = _success()

    first = store.apply_result(task_id=task.task_id, phase="analysis", key="macro", result=result)
    replay = store.apply_result(task_id=task.task_id, phase="analysis", key="macro", result=result)

    assert first.applied is True
    assert replay.applied is False
    assert replay.state.version == first.state.version
    stored = store.require_task(task.task_id)
    assert stored.result_for("analysis", "macro") == result
    applied_events = [
        event for event in store.list_events(task_id=task.task_id)
        if event.event_type == "result_applied"
    ]
    assert len(applied_events) == 1


def test_success_is_never_replaced_by_error(store: StateStore) -> None:
    task = store.create_task(TaskCreate(subject="AAPL", owner="alice"))
    store.apply_result(task_id=task.task_id, phase="analysis", key="macro", result=_success())

    late_timeout = store.apply_result(
        task_id=task.task_id,
        phase="analysis",
        key="macro",
        result=_error(kind=ErrorKind.TIMEOUT),
    )

    assert late_timeout.applied is False
    stored = store.require_task(task.task_id).result_for("analysis", "macro")
    assert stored is not None
    assert stored.succeeded


def test_error_result_can_be_superseded_by_success() -> None:
    assert should_replace_result(_error(), _success()) is True
    assert should_replace_result(_success(), _error()) is False
    assert should_replace_result(None, _error()) is True


def test_update_task_precondition_blocks_write(store: StateStore) -> None:
    task = store.create_task(TaskCreate(subject="AAPL", owner="alice"))

    update = store.update_task(
        task.task_id,
        precondition=lambda current: current.status == TaskStatus.RUNNING,
        mutation=lambda current: replace(current, status=TaskStatus.COMPLETED),
    )

    assert update.applied is False
    assert store.require_task(task.task_id).status == TaskStatus.PENDING


def test_cancel_requested_stays_set(store: StateStore) -> None:
    task = store.create_task(TaskCreate(subject="AAPL", owner="alice"))
    store.update_task(
        task.task_id,
        mutation=lambda current: replace(current, cancel_requested=True),
    )

    store.update_task(
        task.task_id,
        mutation=lambda current: replace(current, cancel_requested=False, current_phase="risk"),
    )

    stored = store.require_task(task.task_id)
    assert stored.cancel_requested is True
    assert stored.current_phase == "risk"


def test_concurrent_updates_do_not_lose_writes(store: StateStore) -> None:
    task = store.create_task(TaskCreate(subject="AAPL", owner="alice"))
    roles = ["macro", "market", "news", "social_media", "fundamentals"]
    barrier = threading.Barrier(len(roles))
    errors: list[BaseException] = []

    def _apply(role: str) -> None:
        try:
            barrier.wait(timeout=5)
            store.apply_result(
                task_id=task.task_id,
                phase="analysis",
                key=role,
                result=_success(role),
            )
        except BaseException as error:  # noqa: BLE001
            errors.append(error)

    threads = [threading.Thread(target=_apply, args=(role,)) for role in roles]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    stored = store.require_task(task.task_id)
    assert sorted(stored.phase_results["analysis"]) == sorted(roles)
    assert stored.version == len(roles)


def test_create_batch_persists_member_tasks(store: StateStore) -> None:
    batch, tasks = store.create_batch(
        BatchCreate(owner="alice", subjects=("AAPL", "MSFT"), skip_flags=("trading",)),
    )

    assert batch.status == BatchStatus.PENDING
    assert batch.task_count == 2
    assert batch.task_ids == tuple(task.task_id for task in tasks)
    assert all(task.batch_id == batch.batch_id for task in tasks)
    assert all(task.skip_phases == ("trading",) for task in tasks)
    assert [task.subject for task in store.list_batch_tasks(batch.batch_id)] == ["AAPL", "MSFT"]


def _batch_ready_for_aggregate(store: StateStore, task_count: int) -> str:
    batch, tasks = store.create_batch(
        BatchCreate(owner="alice", subjects=tuple(f"S{index}" for index in range(task_count))),
    )
    store.update_batch(
        batch.batch_id,
        mutation=lambda current: replace(current, status=BatchStatus.RUNNING),
    )
    for task in tasks:
        store.update_task(
            task.task_id,
            mutation=lambda current: replace(current, status=TaskStatus.COMPLETED),
        )
    return batch.batch_id


def test_trigger_aggregate_waits_for_every_task(store: StateStore) -> None:
    batch, tasks = store.create_batch(BatchCreate(owner="alice", subjects=("AAPL", "MSFT")))
    store.update_batch(
        batch.batch_id,
        mutation=lambda current: replace(current, status=BatchStatus.RUNNING),
    )
    store.update_task(
        tasks[0].task_id,
        mutation=lambda current: replace(current, status=TaskStatus.ERROR),
    )

    assert store.trigger_aggregate(batch.batch_id) is False
    assert store.count_terminal_tasks(batch.batch_id) == 1


def test_trigger_aggregate_fires_exactly_once_under_concurrency(store: StateStore) -> None:
    batch_id = _batch_ready_for_aggregate(store, task_count=5)
    barrier = threading.Barrier(5)
    outcomes: list[bool] = []
    lock = threading.Lock()

    def _trigger() -> None:
        barrier.wait(timeout=5)
        triggered = store.trigger_aggregate(batch_id)
        with lock:
            outcomes.append(triggered)

    threads = [threading.Thread(target=_trigger) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes) == [False, False, False, False, True]
    batch = store.require_batch(batch_id)
    assert batch.status == BatchStatus.AGGREGATING
    assert batch.aggregate_triggered is True
    triggered_events = [
        event for event in store.list_events(batch_id=batch_id)
        if event.event_type == "aggregate_triggered"
    ]
    assert len(triggered_events) == 1


def test_trigger_aggregate_skips_cancelled_batch(store: StateStore) -> None:
    batch_id = _batch_ready_for_aggregate(store, task_count=2)
    store.update_batch(batch_id, mutation=lambda current: replace(current, cancel_requested=True))

    assert store.trigger_aggregate(batch_id) is False


def test_list_stale_tasks_returns_only_old_running_tasks(store: StateStore) -> None:
    running = store.create_task(TaskCreate(subject="AAPL", owner="alice"))
    store.create_task(TaskCreate(subject="MSFT", owner="alice"))
    store.update_task(
        running.task_id,
        mutation=lambda current: replace(current, status=TaskStatus.RUNNING),
    )

    assert store.list_stale_tasks(updated_before=utc_now() - timedelta(minutes=5)) == []
    stale = store.list_stale_tasks(updated_before=utc_now() + timedelta(minutes=5))
    assert [task.task_id for task in stale] == [running.task_id]
    with_pending = store.list_stale_tasks(
        updated_before=utc_now() + timedelta(minutes=5),
        statuses=(TaskStatus.PENDING, TaskStatus.RUNNING),
    )
    assert {task.subject for task in with_pending} == {"AAPL", "MSFT"}


def test_state_survives_reopening_the_store(tmp_path: Path) -> None:
    db_path = tmp_path / "reopen.db"
    first = StateStore(db_path)
    first.init_schema()
    task = first.create_task(TaskCreate(subject="AAPL", owner="alice"))
    first.apply_result(task_id=task.task_id, phase="analysis", key="macro", result=_success())
    first.close()

    second = StateStore(db_path)
    second.init_schema()
    try:
        stored = second.require_task(task.task_id)
        assert stored.result_for("analysis", "macro") is not None
    finally:
        second.close()
