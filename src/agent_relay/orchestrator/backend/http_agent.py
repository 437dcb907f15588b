"""HTTP transport for remote workers: client-side handler and server-side entry point."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import httpx

from agent_relay.orchestrator.backend.base import WorkerRegistry
from agent_relay.orchestrator.errors import WorkerError
from agent_relay.orchestrator.failure_classifier import classify_message
from agent_relay.orchestrator.models import ErrorKind, InvocationResponse, WorkerInvocation
from agent_relay.orchestrator.workflow import Workflow

if TYPE_CHECKING:
    from agent_relay.orchestrator.runtime import WorkerRuntime

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 2
_HTTP_SERVER_ERROR = 500


class HttpWorkerHandler:
    """Posts invocations to ``{base_url}/{role}`` and unwraps the soft envelope.

    Transport failures and 5xx answers are retried a bounded number of times;
    every other non-2xx answer is raised as ``httpx.HTTPStatusError`` so the
    runtime classifies it by status code.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_backoff_seconds: float = 1.0,
        headers: dict[str, str] | None = None,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers or {},
        )

    def __call__(self, invocation: WorkerInvocation) -> dict[str, Any] | None:
        url = f"{self.base_url}/{invocation.role}"
        last_error: str = ""
        for attempt in range(self.max_retries + 1):
            if attempt:
                self._sleep(self.retry_backoff_seconds * attempt)
            try:
                response = self._client.post(url, json=invocation.to_payload())
            except httpx.TransportError as error:
                last_error = f"{type(error).__name__}: {error}"
                logger.warning(
                    "Worker endpoint %s transport error (attempt %d/%d): %s",
                    url,
                    attempt + 1,
                    self.max_retries + 1,
                    error,
                )
                continue
            if response.status_code >= _HTTP_SERVER_ERROR:
                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    "Worker endpoint %s answered %d (attempt %d/%d)",
                    url,
                    response.status_code,
                    attempt + 1,
                    self.max_retries + 1,
                )
                continue
            response.raise_for_status()
            return _unwrap_envelope(response)

        raise WorkerError(
            f"Worker endpoint {url} unreachable after {self.max_retries + 1} attempts: "
            f"{last_error}",
            kind=ErrorKind.UPSTREAM_ERROR,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> HttpWorkerHandler:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def build_http_registry(workflow: Workflow, handler: HttpWorkerHandler) -> WorkerRegistry:
    """Route every role of the workflow to the same remote worker host."""

    registry = WorkerRegistry()
    for phase in workflow.phases:
        for role in phase.roles:
            registry.register(role, handler)
    return registry


def handle_invocation_payload(runtime: WorkerRuntime, payload: object) -> dict[str, Any]:
    """Server-side entry point: always answers with a parseable soft envelope."""

    try:
        invocation = WorkerInvocation.from_payload(payload)  # type: ignore[arg-type]
    except (KeyError, TypeError, ValueError) as error:
        return InvocationResponse(
            success=False,
            result={
                "payload": {},
                "errorKind": ErrorKind.OTHER.value,
                "error": f"Malformed invocation request: {error}",
            },
        ).to_payload()
    return runtime.execute(invocation).to_payload()


def _unwrap_envelope(response: httpx.Response) -> dict[str, Any] | None:
    try:
        body = response.json()
    except ValueError as error:
        raise WorkerError(f"Worker answered with invalid JSON: {error}") from error
    if not isinstance(body, dict) or "success" not in body:
        raise WorkerError("Worker answered without a success envelope.")

    result = body.get("result") or {}
    if not result and body.get("retryScheduled"):
        return None
    if body["success"]:
        return dict(result.get("payload") or {})

    message = str(result.get("error") or "Remote worker reported failure.")
    try:
        kind = ErrorKind(result.get("errorKind"))
    except ValueError:
        kind = classify_message(message).error_kind
    raise WorkerError(message, kind=kind)
