"""Deterministic worker failure classification into the error taxonomy."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from agent_relay.orchestrator.errors import WorkerError
from agent_relay.orchestrator.models import ErrorKind

FAILURE_CLASSIFIER_VERSION = 1

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "429",
    "quota",
    "resource_exhausted",
    "usage limit",
)
_AUTH_FAILURE_PATTERNS: tuple[str, ...] = (
    "invalid api key",
    "api key",
    "api_key",
    "unauthorized",
    "forbidden",
    "permission denied",
    "authentication",
    "expired token",
    "401",
    "403",
)
_DATA_FETCH_PATTERNS: tuple[str, ...] = (
    "data fetch",
    "failed to fetch",
    "market data",
    "no data available",
    "data unavailable",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "deadline exceeded",
)
_UPSTREAM_PATTERNS: tuple[str, ...] = (
    "bad gateway",
    "service unavailable",
    "gateway timeout",
    "upstream",
    "connection reset",
    "connection refused",
    "temporarily unavailable",
    "502",
    "503",
    "504",
)

_RULES: tuple[tuple[str, ErrorKind, tuple[str, ...]], ...] = (
    ("rate_limit", ErrorKind.RATE_LIMIT, _RATE_LIMIT_PATTERNS),
    ("auth_failure", ErrorKind.AUTH_FAILURE, _AUTH_FAILURE_PATTERNS),
    ("data_fetch", ErrorKind.DATA_FETCH_ERROR, _DATA_FETCH_PATTERNS),
    ("timeout", ErrorKind.TIMEOUT, _TIMEOUT_PATTERNS),
    ("upstream", ErrorKind.UPSTREAM_ERROR, _UPSTREAM_PATTERNS),
)

_HTTP_TOO_MANY_REQUESTS = 429
_HTTP_SERVER_ERROR = 500


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    error_kind: ErrorKind
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "error_kind": self.error_kind.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_exception(error: BaseException) -> FailureClassification:
    """Classify a failure raised by a worker handler."""

    if isinstance(error, WorkerError):
        return FailureClassification(
            error_kind=error.kind,
            matched_rule="explicit",
            matched_pattern=None,
        )
    if isinstance(error, httpx.HTTPStatusError):
        return _classify_status(error.response.status_code, fallback=str(error))
    if isinstance(error, httpx.TimeoutException):
        return FailureClassification(
            error_kind=ErrorKind.TIMEOUT,
            matched_rule="transport_timeout",
            matched_pattern=None,
        )
    if isinstance(error, httpx.TransportError):
        return FailureClassification(
            error_kind=ErrorKind.UPSTREAM_ERROR,
            matched_rule="transport_error",
            matched_pattern=None,
        )
    return classify_message(str(error))


def classify_message(message: str) -> FailureClassification:
    """Classify a free-form error message by the first matching rule."""

    haystack = message.lower()
    for rule, kind, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                error_kind=kind,
                matched_rule=rule,
                matched_pattern=pattern,
            )
    return FailureClassification(
        error_kind=ErrorKind.OTHER,
        matched_rule="fallback_other",
        matched_pattern=None,
    )


def _classify_status(status_code: int, *, fallback: str) -> FailureClassification:
    if status_code == _HTTP_TOO_MANY_REQUESTS:
        kind = ErrorKind.RATE_LIMIT
    elif status_code in {401, 403}:
        kind = ErrorKind.AUTH_FAILURE
    elif status_code >= _HTTP_SERVER_ERROR:
        kind = ErrorKind.UPSTREAM_ERROR
    else:
        return classify_message(fallback)
    return FailureClassification(
        error_kind=kind,
        matched_rule="http_status",
        matched_pattern=str(status_code),
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
