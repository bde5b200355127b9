from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field, RedisDsn
from pydantic_settings import BaseSettings, SettingsConfigDict


class RedisSettings(BaseModel):
    url: RedisDsn = Field(
        "redis://localhost:6379/0",
        description="Connection URL for the Redis instance backing locks and counters.",
    )
    cache_db: int = Field(2, ge=0, description="Redis database index for locks, dedup keys and metrics.")
    namespace: str = Field("taskq", min_length=1, description="Key prefix applied to every cache entry.")


class QueueSettings(BaseModel):
    environment_suffix: str | None = Field(
        default=None,
        description="Optional suffix appended to every queue name (e.g. 'staging' -> 'emails-staging').",
    )
    enabled: list[str] = Field(
        default_factory=list,
        description="Queues consumed by this worker. Empty means every registered queue.",
    )
    poll_interval_seconds: float = Field(1.0, gt=0.0)
    batch_size: int = Field(10, ge=1)


class RunnerSettings(BaseModel):
    lock_prefix: str = Field("task_lock_", min_length=1)
    lock_timeout_seconds: int = Field(30 * 60, ge=1, description="TTL of a per-task lock.")
    backpressure_delay_seconds: int = Field(
        180,
        ge=1,
        description="Delay applied to a task group when the async task manager is saturated.",
    )


class ReconciliationSettings(BaseModel):
    immediate_window_seconds: int = Field(120, ge=0, description="Tasks due within this window go straight to the queue.")
    default_retry_after_ms: int = Field(2000, ge=1)
    max_retry_delay_ms: int = Field(5 * 60 * 1000, ge=1)
    handoff_requeue_delay_seconds: int = Field(30, ge=0)
    stats_threshold: int = Field(1000, ge=1)
    stats_failure_threshold: int = Field(100, ge=1)
    mature_interval_seconds: float = Field(5.0, gt=0.0)
    mature_lock_ttl_seconds: int = Field(20, ge=1)
    mature_dedup_ttl_seconds: int = Field(120, ge=1)
    discard_sample_rate: float = Field(0.1, ge=0.0, le=1.0)
    cleanup_enabled: bool = Field(False)
    cleanup_interval_seconds: int = Field(3600, ge=30)
    cleanup_retention_hours: int = Field(48, ge=1)


class AsyncTaskSettings(BaseModel):
    max_tasks: int = Field(100, ge=1)
    shutdown_grace_seconds: float = Field(10.0, ge=0.0)


class LifecycleSettings(BaseModel):
    include_payload: bool = Field(False, description="Attach task payloads to lifecycle events.")
    heartbeat_interval_seconds: float = Field(5.0, gt=0.0)


class NotificationSettings(BaseModel):
    enabled: bool = Field(True)
    webhook_url: str | None = Field(None, description="Optional webhook receiving queue notifications.")
    timeout_seconds: float = Field(5.0, ge=0.1)
    max_attempts: int = Field(3, ge=1)


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    metrics_port: int | None = Field(None, ge=1, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")
    instance_id: str = Field("unknown", min_length=1)

    redis: RedisSettings = Field(default_factory=RedisSettings)  # type: ignore[arg-type]
    queues: QueueSettings = Field(default_factory=QueueSettings)  # type: ignore[arg-type]
    runner: RunnerSettings = Field(default_factory=RunnerSettings)  # type: ignore[arg-type]
    reconciliation: ReconciliationSettings = Field(default_factory=ReconciliationSettings)  # type: ignore[arg-type]
    async_tasks: AsyncTaskSettings = Field(default_factory=AsyncTaskSettings)  # type: ignore[arg-type]
    lifecycle: LifecycleSettings = Field(default_factory=LifecycleSettings)  # type: ignore[arg-type]
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()
