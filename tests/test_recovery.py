from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from datetime import timedelta

import allure

from agent_relay.orchestrator.backend import build_echo_registry
from agent_relay.orchestrator.engine import Orchestrator
from agent_relay.orchestrator.errors import StoreUnavailableError
from agent_relay.orchestrator.models import (
    BatchCreate,
    BatchStatus,
    ErrorKind,
    TaskStatus,
)
from agent_relay.orchestrator.watchdog import RetryPolicy
from agent_relay.orchestrator.workflow import default_workflow
from agent_relay.storage.common import utc_now

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Stale Task Recovery"),
]


def test_sweep_redispatches_then_times_out_lost_slot(
    make_orchestrator: Callable[..., Orchestrator],
) -> None:
    workflow = default_workflow()
    registry = build_echo_registry(workflow)
    market_attempts: list[int] = []

    def _silent_market(invocation):
        market_attempts.append(invocation.attempt)

    registry.register("market", _silent_market)
    orchestrator = make_orchestrator(
        workflow,
        registry,
        policy=RetryPolicy(timeout_seconds=10, max_retries=1, retry_delay_seconds=1),
    )
    task = orchestrator.submit_task("AAPL", owner="alice")
    # in-memory deadlines are gone after a restart
    orchestrator.watchdog.close()

    first = orchestrator.sweeper.sweep(
        stale_after=timedelta(minutes=30),
        now=utc_now() + timedelta(hours=1),
    )

    assert first.scanned_tasks == 1
    assert first.redispatched == 1
    assert first.timed_out == 0
    assert market_attempts == [0, 1]
    assert orchestrator.store.require_task(task.task_id).status == TaskStatus.RUNNING

    second = orchestrator.sweeper.sweep(
        stale_after=timedelta(minutes=30),
        now=utc_now() + timedelta(hours=2),
    )

    assert second.redispatched == 0
    assert second.timed_out == 1
    assert market_attempts == [0, 1]
    stored = orchestrator.store.require_task(task.task_id)
    assert stored.status == TaskStatus.COMPLETED
    market = stored.result_for("analysis", "market")
    assert market is not None
    assert market.error_kind == ErrorKind.TIMEOUT
    assert market.attempt == 1
    assert "2 attempts (2/2)" in (market.error or "")


def test_sweep_ignores_recently_updated_tasks(
    make_orchestrator: Callable[..., Orchestrator],
) -> None:
    workflow = default_workflow()
    registry = build_echo_registry(workflow)
    registry.register("market", lambda invocation: None)
    orchestrator = make_orchestrator(workflow, registry)
    orchestrator.submit_task("AAPL", owner="alice")

    summary = orchestrator.sweep(stale_after=timedelta(minutes=30))

    assert summary.scanned_tasks == 0
    assert summary.redispatched == 0


def test_sweep_triggers_missed_batch_aggregate(
    make_orchestrator: Callable[..., Orchestrator],
) -> None:
    workflow = default_workflow()
    orchestrator = make_orchestrator(workflow, build_echo_registry(workflow))
    store = orchestrator.store
    batch, tasks = store.create_batch(BatchCreate(owner="alice", subjects=("AAPL", "MSFT")))
    store.update_batch(
        batch.batch_id,
        mutation=lambda current: replace(current, status=BatchStatus.RUNNING),
    )
    for task in tasks:
        store.update_task(
            task.task_id,
            mutation=lambda current: replace(current, status=TaskStatus.COMPLETED),
        )

    summary = orchestrator.sweep(stale_after=timedelta(minutes=30))
    replay = orchestrator.sweep(stale_after=timedelta(minutes=30))

    assert summary.rechecked_batches == 1
    assert summary.aggregates_triggered == 1
    assert replay.rechecked_batches == 0
    stored = store.require_batch(batch.batch_id)
    assert stored.status == BatchStatus.COMPLETED
    assert stored.aggregate_result is not None
    assert stored.aggregate_result["completed"] == 2


def test_transient_store_failure_on_task_start_is_retried(
    make_orchestrator: Callable[..., Orchestrator],
) -> None:
    workflow = default_workflow()
    orchestrator = make_orchestrator(workflow, build_echo_registry(workflow))
    start_task = orchestrator.tasks.start_task
    start_calls: list[str] = []

    def _flaky_start(task_id: str):
        start_calls.append(task_id)
        if len(start_calls) == 2:
            raise StoreUnavailableError("database is locked")
        return start_task(task_id)

    orchestrator.tasks.start_task = _flaky_start

    started = orchestrator.submit_batch(["AAPL", "MSFT", "NVDA"], owner="alice")

    batch = orchestrator.store.require_batch(started.batch_id)
    assert len(start_calls) == 4
    assert start_calls[1] == start_calls[2]
    assert batch.status == BatchStatus.COMPLETED
    assert all(
        task.status == TaskStatus.COMPLETED
        for task in orchestrator.store.list_batch_tasks(batch.batch_id)
    )
    assert orchestrator.dispatcher.errors == []


def test_sweep_starts_task_whose_start_was_lost(
    make_orchestrator: Callable[..., Orchestrator],
) -> None:
    workflow = default_workflow()
    orchestrator = make_orchestrator(workflow, build_echo_registry(workflow))
    start_task = orchestrator.tasks.start_task
    store_down = True

    def _start(task_id: str):
        if store_down and orchestrator.store.require_task(task_id).subject == "MSFT":
            raise StoreUnavailableError("database is locked")
        return start_task(task_id)

    orchestrator.tasks.start_task = _start
    started = orchestrator.submit_batch(["AAPL", "MSFT", "NVDA"], owner="alice")

    tasks = {
        task.subject: task for task in orchestrator.store.list_batch_tasks(started.batch_id)
    }
    assert tasks["MSFT"].status == TaskStatus.PENDING
    assert orchestrator.store.require_batch(started.batch_id).status == BatchStatus.RUNNING
    assert len(orchestrator.dispatcher.errors) == 1

    store_down = False
    summary = orchestrator.sweeper.sweep(
        stale_after=timedelta(0),
        now=utc_now() + timedelta(seconds=1),
    )

    assert summary.started_tasks == 1
    assert orchestrator.store.require_task(tasks["MSFT"].task_id).status == TaskStatus.COMPLETED
    batch = orchestrator.store.require_batch(started.batch_id)
    assert batch.status == BatchStatus.COMPLETED
    assert batch.aggregate_result is not None
    assert batch.aggregate_result["completed"] == 3


def test_sweep_resumes_batch_stuck_in_aggregating(
    make_orchestrator: Callable[..., Orchestrator],
) -> None:
    workflow = default_workflow()
    orchestrator = make_orchestrator(workflow, build_echo_registry(workflow))
    execute_aggregate = orchestrator.batches.execute_aggregate

    def _store_down(batch_id: str):
        raise StoreUnavailableError("database is locked")

    orchestrator.batches.execute_aggregate = _store_down
    started = orchestrator.submit_batch(["AAPL", "MSFT"], owner="alice")

    stuck = orchestrator.store.require_batch(started.batch_id)
    assert stuck.status == BatchStatus.AGGREGATING
    assert stuck.aggregate_triggered is True

    orchestrator.batches.execute_aggregate = execute_aggregate
    summary = orchestrator.sweeper.sweep(
        stale_after=timedelta(0),
        now=utc_now() + timedelta(seconds=1),
    )
    replay = orchestrator.sweeper.sweep(
        stale_after=timedelta(0),
        now=utc_now() + timedelta(seconds=1),
    )

    assert summary.aggregates_resumed == 1
    assert replay.aggregates_resumed == 0
    batch = orchestrator.store.require_batch(started.batch_id)
    assert batch.status == BatchStatus.COMPLETED
    assert batch.aggregate_result is not None
    assert batch.aggregate_result["completed"] == 2
