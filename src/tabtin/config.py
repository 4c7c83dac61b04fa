"""Runtime configuration for the queue, workers and instance-wide limits."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class QueueSettings:
    """Job queue defaults and retention."""

    default_priority: int = 10
    redo_priority: int = 5
    default_max_attempts: int = 3
    retention_days: int = 7
    stale_job_seconds: int = 90_000


@dataclass(slots=True)
class InstanceLimits:
    """Caps applied on top of per-tenant worker configuration."""

    max_concurrent_tenants: int = 1
    max_parallel_requests: int = 10
    max_requests_per_minute: int = 60

    def cap_concurrency(self, requested: int) -> int:
        """Clamp a tenant's requested concurrency to the instance cap."""

        return max(1, min(requested, self.max_parallel_requests))

    def cap_requests_per_minute(self, requested: int) -> int:
        """Clamp a tenant's requested rate to the instance cap. 0 means no tenant limit."""

        if self.max_requests_per_minute <= 0:
            return max(0, requested)
        if requested <= 0:
            return self.max_requests_per_minute
        return min(requested, self.max_requests_per_minute)


@dataclass(slots=True)
class WorkerSettings:
    """Executor loop and orchestrator discovery settings."""

    poll_interval_seconds: float = 2.0
    error_backoff_seconds: float = 5.0
    idle_shutdown_seconds: float = 300.0
    discovery_interval_seconds: float = 5.0
    enable_discovery: bool = True


@dataclass(slots=True)
class ModelHttpSettings:
    """Transport settings for outbound model calls."""

    transport_retries: int = 0
    user_agent: str = "tabtin/0.1"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".tabtin.db")
    sqlite_busy_timeout_ms: int = 5_000
    queue: QueueSettings = field(default_factory=QueueSettings)
    limits: InstanceLimits = field(default_factory=InstanceLimits)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    model_http: ModelHttpSettings = field(default_factory=ModelHttpSettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TABTIN_DB_PATH", ".tabtin.db")),
            sqlite_busy_timeout_ms=int(os.getenv("TABTIN_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            queue=QueueSettings(
                default_priority=int(os.getenv("TABTIN_QUEUE_DEFAULT_PRIORITY", "10")),
                redo_priority=int(os.getenv("TABTIN_QUEUE_REDO_PRIORITY", "5")),
                default_max_attempts=int(os.getenv("TABTIN_QUEUE_DEFAULT_MAX_ATTEMPTS", "3")),
                retention_days=int(os.getenv("TABTIN_QUEUE_RETENTION_DAYS", "7")),
                stale_job_seconds=int(os.getenv("TABTIN_QUEUE_STALE_JOB_SECONDS", "90000")),
            ),
            limits=InstanceLimits(
                max_concurrent_tenants=int(
                    os.getenv("TABTIN_INSTANCE_MAX_CONCURRENT_TENANTS", "1"),
                ),
                max_parallel_requests=int(
                    os.getenv("TABTIN_INSTANCE_MAX_PARALLEL_REQUESTS", "10"),
                ),
                max_requests_per_minute=int(
                    os.getenv("TABTIN_INSTANCE_MAX_REQUESTS_PER_MINUTE", "60"),
                ),
            ),
            worker=WorkerSettings(
                poll_interval_seconds=float(
                    os.getenv("TABTIN_WORKER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                error_backoff_seconds=float(
                    os.getenv("TABTIN_WORKER_ERROR_BACKOFF_SECONDS", "5.0"),
                ),
                idle_shutdown_seconds=float(
                    os.getenv("TABTIN_WORKER_IDLE_SHUTDOWN_SECONDS", "300"),
                ),
                discovery_interval_seconds=float(
                    os.getenv("TABTIN_DISCOVERY_INTERVAL_SECONDS", "5.0"),
                ),
                enable_discovery=_env_bool("TABTIN_ENABLE_DISCOVERY", default=True),
            ),
            model_http=ModelHttpSettings(
                transport_retries=int(os.getenv("TABTIN_MODEL_HTTP_RETRIES", "0")),
                user_agent=os.getenv("TABTIN_MODEL_USER_AGENT", "tabtin/0.1"),
            ),
            log_level=os.getenv("TABTIN_LOG_LEVEL", "INFO").upper(),
        )

    def validate_for_worker(self) -> None:
        """Raise configuration error if worker or limit settings are invalid."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("TABTIN_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.queue.default_max_attempts <= 0:
            raise ValueError("TABTIN_QUEUE_DEFAULT_MAX_ATTEMPTS must be > 0.")
        if self.queue.retention_days < 0:
            raise ValueError("TABTIN_QUEUE_RETENTION_DAYS must be >= 0.")
        if self.queue.stale_job_seconds <= 0:
            raise ValueError("TABTIN_QUEUE_STALE_JOB_SECONDS must be > 0.")
        if self.limits.max_concurrent_tenants <= 0:
            raise ValueError("TABTIN_INSTANCE_MAX_CONCURRENT_TENANTS must be > 0.")
        if self.limits.max_parallel_requests <= 0:
            raise ValueError("TABTIN_INSTANCE_MAX_PARALLEL_REQUESTS must be > 0.")
        if self.limits.max_requests_per_minute < 0:
            raise ValueError("TABTIN_INSTANCE_MAX_REQUESTS_PER_MINUTE must be >= 0.")
        if self.worker.poll_interval_seconds <= 0:
            raise ValueError("TABTIN_WORKER_POLL_INTERVAL_SECONDS must be > 0.")
        if self.worker.error_backoff_seconds < 0:
            raise ValueError("TABTIN_WORKER_ERROR_BACKOFF_SECONDS must be >= 0.")
        if self.worker.idle_shutdown_seconds < 0:
            raise ValueError("TABTIN_WORKER_IDLE_SHUTDOWN_SECONDS must be >= 0.")
        if self.worker.discovery_interval_seconds <= 0:
            raise ValueError("TABTIN_DISCOVERY_INTERVAL_SECONDS must be > 0.")
        if self.model_http.transport_retries < 0:
            raise ValueError("TABTIN_MODEL_HTTP_RETRIES must be >= 0.")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {raw!r}")
