"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path

import pytest

from agent_relay.orchestrator.backend import WorkerRegistry, summarize_batch
from agent_relay.orchestrator.dispatch import InlineDispatcher
from agent_relay.orchestrator.engine import Orchestrator
from agent_relay.orchestrator.repository import StateStore
from agent_relay.orchestrator.watchdog import RetryPolicy
from agent_relay.orchestrator.workflow import Workflow


@dataclass(slots=True)
class _ManualTimer:
    due_at: float
    callback: Callable[[], None]
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Virtual-clock scheduler: callbacks fire only when the test advances time."""

    def __init__(self) -> None:
        self.now = 0.0
        self._timers: list[_ManualTimer] = []

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> _ManualTimer:
        timer = _ManualTimer(due_at=self.now + delay_seconds, callback=callback)
        self._timers.append(timer)
        return timer

    @property
    def pending(self) -> int:
        return sum(1 for timer in self._timers if not timer.cancelled)

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [
                timer for timer in self._timers if not timer.cancelled and timer.due_at <= target
            ]
            if not due:
                break
            timer = min(due, key=lambda item: item.due_at)
            self._timers.remove(timer)
            self.now = timer.due_at
            timer.callback()
        self.now = target


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[StateStore]:
    state_store = StateStore(tmp_path / "relay.db")
    state_store.init_schema()
    try:
        yield state_store
    finally:
        state_store.close()


@pytest.fixture()
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture()
def make_orchestrator(
    store: StateStore,
    scheduler: ManualScheduler,
) -> Iterator[Callable[..., Orchestrator]]:
    """Factory for an inline, virtual-clock orchestrator over the test store."""

    created: list[Orchestrator] = []

    def _make(
        workflow: Workflow,
        registry: WorkerRegistry,
        *,
        policy: RetryPolicy | None = None,
        aggregate_action=summarize_batch,
    ) -> Orchestrator:
        orchestrator = Orchestrator(
            store=store,
            workflow=workflow,
            registry=registry,
            dispatcher=InlineDispatcher(),
            scheduler=scheduler,
            aggregate_action=aggregate_action,
            policy=policy or RetryPolicy(timeout_seconds=10, max_retries=3, retry_delay_seconds=1),
            notify_backoff_seconds=0.0,
            sleep=lambda _: None,
        )
        created.append(orchestrator)
        return orchestrator

    yield _make
    for orchestrator in created:
        orchestrator.close()
