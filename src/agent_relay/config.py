"""Runtime configuration for the orchestration engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


@dataclass(slots=True)
class WatchdogSettings:
    """Per-invocation deadline and self-retry settings."""

    timeout_seconds: float = 180.0
    max_retries: int = 3
    retry_delay_seconds: float = 3.0


@dataclass(slots=True)
class NotificationSettings:
    """Worker-to-coordinator delivery retries."""

    max_retries: int = 2
    backoff_seconds: float = 1.0


@dataclass(slots=True)
class WorkflowSettings:
    """Shape of the built-in phase table."""

    debate_rounds: int = 2
    hard_required_phases: tuple[str, ...] = ()


@dataclass(slots=True)
class RemoteWorkerSettings:
    """HTTP worker endpoint; unset base URL means local demo workers."""

    base_url: str | None = None
    timeout_seconds: float = 30.0
    max_retries: int = 2
    retry_backoff_seconds: float = 1.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".agent_relay.db")
    sqlite_busy_timeout_ms: int = 5_000
    owner: str = "default_owner"
    dispatch_max_workers: int = 8
    inline_dispatch: bool = False
    stale_after_seconds: int = 1_800
    watchdog: WatchdogSettings = field(default_factory=WatchdogSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    workflow: WorkflowSettings = field(default_factory=WorkflowSettings)
    remote: RemoteWorkerSettings = field(default_factory=RemoteWorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local runs."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_RELAY_DB_PATH", ".agent_relay.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_RELAY_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            owner=os.getenv("AGENT_RELAY_OWNER", "default_owner"),
            dispatch_max_workers=int(os.getenv("AGENT_RELAY_DISPATCH_MAX_WORKERS", "8")),
            inline_dispatch=_env_bool("AGENT_RELAY_INLINE_DISPATCH", default=False),
            stale_after_seconds=int(os.getenv("AGENT_RELAY_STALE_AFTER_SECONDS", "1800")),
            watchdog=WatchdogSettings(
                timeout_seconds=float(os.getenv("AGENT_RELAY_WORKER_TIMEOUT_SECONDS", "180")),
                max_retries=int(os.getenv("AGENT_RELAY_WORKER_MAX_RETRIES", "3")),
                retry_delay_seconds=float(
                    os.getenv("AGENT_RELAY_WORKER_RETRY_DELAY_SECONDS", "3"),
                ),
            ),
            notifications=NotificationSettings(
                max_retries=int(os.getenv("AGENT_RELAY_NOTIFY_MAX_RETRIES", "2")),
                backoff_seconds=float(os.getenv("AGENT_RELAY_NOTIFY_BACKOFF_SECONDS", "1.0")),
            ),
            workflow=WorkflowSettings(
                debate_rounds=int(os.getenv("AGENT_RELAY_DEBATE_ROUNDS", "2")),
                hard_required_phases=_csv_env("AGENT_RELAY_HARD_REQUIRED_PHASES"),
            ),
            remote=RemoteWorkerSettings(
                base_url=os.getenv("AGENT_RELAY_REMOTE_WORKER_URL", "").strip() or None,
                timeout_seconds=float(os.getenv("AGENT_RELAY_REMOTE_TIMEOUT_SECONDS", "30")),
                max_retries=int(os.getenv("AGENT_RELAY_REMOTE_MAX_RETRIES", "2")),
                retry_backoff_seconds=float(
                    os.getenv("AGENT_RELAY_REMOTE_RETRY_BACKOFF_SECONDS", "1.0"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("AGENT_RELAY_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if not self.owner.strip():
            raise ValueError("AGENT_RELAY_OWNER must be non-empty.")
        if self.dispatch_max_workers <= 0:
            raise ValueError("AGENT_RELAY_DISPATCH_MAX_WORKERS must be > 0.")
        if self.stale_after_seconds <= 0:
            raise ValueError("AGENT_RELAY_STALE_AFTER_SECONDS must be > 0.")
        if self.watchdog.timeout_seconds <= 0:
            raise ValueError("AGENT_RELAY_WORKER_TIMEOUT_SECONDS must be > 0.")
        if self.watchdog.max_retries < 0:
            raise ValueError("AGENT_RELAY_WORKER_MAX_RETRIES must be >= 0.")
        if self.watchdog.retry_delay_seconds < 0:
            raise ValueError("AGENT_RELAY_WORKER_RETRY_DELAY_SECONDS must be >= 0.")
        if self.notifications.max_retries < 0:
            raise ValueError("AGENT_RELAY_NOTIFY_MAX_RETRIES must be >= 0.")
        if self.notifications.backoff_seconds < 0:
            raise ValueError("AGENT_RELAY_NOTIFY_BACKOFF_SECONDS must be >= 0.")
        if self.workflow.debate_rounds < 1:
            raise ValueError("AGENT_RELAY_DEBATE_ROUNDS must be >= 1.")
        if self.remote.base_url is not None:
            _validate_worker_url(self.remote.base_url)
        if self.remote.timeout_seconds <= 0:
            raise ValueError("AGENT_RELAY_REMOTE_TIMEOUT_SECONDS must be > 0.")
        if self.remote.max_retries < 0:
            raise ValueError("AGENT_RELAY_REMOTE_MAX_RETRIES must be >= 0.")


def _csv_env(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()
    values: list[str] = []
    for part in raw.split(","):
        normalized = part.strip()
        if normalized and normalized not in values:
            values.append(normalized)
    return tuple(values)


def _validate_worker_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid AGENT_RELAY_REMOTE_WORKER_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
