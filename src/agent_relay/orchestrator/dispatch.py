"""Fire-and-forget execution of hand-offs: worker runs, notifications, aggregates."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Protocol, TypeVar

from agent_relay.orchestrator.errors import ConcurrentUpdateError, StoreUnavailableError

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT")

RETRYABLE_DELIVERY_ERRORS: tuple[type[Exception], ...] = (
    StoreUnavailableError,
    ConcurrentUpdateError,
)


class Dispatcher(Protocol):
    """Runs a call without the submitter waiting for, or seeing, its outcome."""

    def submit(self, call: Callable[[], object], *, label: str) -> None:
        """Schedule ``call``; ``label`` names it in logs."""


class InlineDispatcher:
    """Runs submitted calls on the submitting thread, in submission order.

    Nested submissions are queued and drained by the outermost ``submit`` so
    long hand-off chains do not grow the stack. Failures are logged and kept
    in :attr:`errors`. Meant for single-threaded local runs and tests.
    """

    def __init__(self) -> None:
        self._queue: deque[tuple[str, Callable[[], object]]] = deque()
        self._draining = False
        self.errors: list[tuple[str, BaseException]] = []

    def submit(self, call: Callable[[], object], *, label: str) -> None:
        self._queue.append((label, call))
        if self._draining:
            return
        self._draining = True
        try:
            while self._queue:
                current_label, current = self._queue.popleft()
                try:
                    current()
                except Exception as error:
                    logger.exception("Dispatched call failed: %s", current_label)
                    self.errors.append((current_label, error))
        finally:
            self._draining = False


class ThreadPoolDispatcher:
    """Runs submitted calls on a bounded thread pool."""

    def __init__(self, *, max_workers: int = 8) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="agent-relay",
        )
        self._lock = threading.Lock()
        self._pending: set[Future[object]] = set()
        self.errors: list[tuple[str, BaseException]] = []

    def submit(self, call: Callable[[], object], *, label: str) -> None:
        future = self._executor.submit(call)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(lambda done: self._on_done(done, label))

    def wait_idle(
        self,
        *,
        timeout_seconds: float | None = None,
        poll_seconds: float = 0.05,
    ) -> bool:
        """Block until no submitted call is running or queued."""

        deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
        while True:
            with self._lock:
                if not self._pending:
                    return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(poll_seconds)

    def shutdown(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)

    def _on_done(self, future: Future[object], label: str) -> None:
        with self._lock:
            self._pending.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("Dispatched call failed: %s", label, exc_info=error)
            self.errors.append((label, error))


def deliver_with_retry(
    call: Callable[[], ResultT],
    *,
    max_retries: int,
    backoff_seconds: float,
    label: str,
    sleep: Callable[[float], None] = time.sleep,
) -> ResultT:
    """Invoke ``call`` retrying store-level failures up to ``max_retries`` times."""

    for attempt in range(max_retries + 1):
        try:
            return call()
        except RETRYABLE_DELIVERY_ERRORS as error:
            if attempt >= max_retries:
                raise
            logger.warning(
                "Delivery of %s failed (attempt %d/%d), retrying: %s",
                label,
                attempt + 1,
                max_retries + 1,
                error,
            )
            sleep(backoff_seconds * (attempt + 1))
    raise AssertionError("unreachable")  # pragma: no cover
