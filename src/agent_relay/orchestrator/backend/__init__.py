"""Worker backends: interfaces, demo workers and the HTTP transport."""

from agent_relay.orchestrator.backend.base import (
    AggregateAction,
    UnknownRoleError,
    WorkerHandler,
    WorkerRegistry,
)
from agent_relay.orchestrator.backend.echo_agent import (
    EchoWorker,
    build_echo_registry,
    summarize_batch,
)
from agent_relay.orchestrator.backend.http_agent import (
    HttpWorkerHandler,
    build_http_registry,
    handle_invocation_payload,
)

__all__ = [
    "AggregateAction",
    "EchoWorker",
    "HttpWorkerHandler",
    "UnknownRoleError",
    "WorkerHandler",
    "WorkerRegistry",
    "build_echo_registry",
    "build_http_registry",
    "handle_invocation_payload",
    "summarize_batch",
]
