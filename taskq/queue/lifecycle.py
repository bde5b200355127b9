from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Literal

from ..core.logging import get_logger
from .models import Task, utcnow

logger = get_logger(name=__name__)

WorkerStopReason = Literal["shutdown", "error", "idle_timeout"]


@dataclass(slots=True)
class TaskContext:
    task_id: str
    task_type: str
    queue_id: str
    attempt: int
    max_retries: int
    scheduled_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    task_hash: str | None = None
    worker_id: str | None = None


@dataclass(slots=True)
class TaskTiming:
    queued_duration_ms: float
    processing_duration_ms: float
    total_duration_ms: float


@dataclass(slots=True)
class WorkerInfo:
    worker_id: str
    hostname: str
    pid: int
    started_at: datetime
    enabled_queues: list[str] = field(default_factory=list)


@dataclass(slots=True)
class WorkerStats:
    tasks_processed: int = 0
    tasks_succeeded: int = 0
    tasks_failed: int = 0
    avg_processing_ms: float = 0.0

    def snapshot(self) -> "WorkerStats":
        return WorkerStats(
            tasks_processed=self.tasks_processed,
            tasks_succeeded=self.tasks_succeeded,
            tasks_failed=self.tasks_failed,
            avg_processing_ms=self.avg_processing_ms,
        )


def build_task_context(
    task: Task,
    *,
    max_retries: int,
    include_payload: bool,
    worker_id: str | None = None,
) -> TaskContext:
    payload = task.payload if isinstance(task.payload, dict) else {}
    task_hash = task.task_hash or payload.get("task_hash")
    return TaskContext(
        task_id=str(task.id) if task.id is not None else task.key,
        task_hash=task_hash if isinstance(task_hash, str) else None,
        task_type=task.type,
        queue_id=task.queue_id,
        payload=dict(payload) if include_payload else {},
        attempt=task.retry_count + 1,
        max_retries=max_retries,
        scheduled_at=task.created_at or utcnow(),
        worker_id=worker_id,
    )


class TaskLifecycleProvider:
    """Observer of per-task events. Override the hooks you need."""

    async def on_task_scheduled(self, ctx: TaskContext) -> None:
        return

    async def on_task_started(self, ctx: TaskContext, *, started_at: datetime, queued_duration_ms: float) -> None:
        return

    async def on_task_completed(self, ctx: TaskContext, *, timing: TaskTiming, result: Any = None) -> None:
        return

    async def on_task_failed(
        self,
        ctx: TaskContext,
        *,
        timing: TaskTiming,
        error: BaseException,
        will_retry: bool,
        next_attempt_at: datetime | None = None,
    ) -> None:
        return

    async def on_task_exhausted(
        self,
        ctx: TaskContext,
        *,
        timing: TaskTiming,
        error: BaseException,
        total_attempts: int,
    ) -> None:
        return


class WorkerLifecycleProvider:
    """Observer of worker and batch events."""

    async def on_worker_started(self, info: WorkerInfo) -> None:
        return

    async def on_worker_heartbeat(self, info: WorkerInfo, *, stats: WorkerStats, memory_usage_mb: float) -> None:
        return

    async def on_worker_stopped(self, info: WorkerInfo, *, reason: WorkerStopReason, final_stats: WorkerStats) -> None:
        return

    async def on_batch_started(self, info: WorkerInfo, *, batch_size: int, task_types: list[str]) -> None:
        return

    async def on_batch_completed(
        self,
        info: WorkerInfo,
        *,
        batch_size: int,
        succeeded: int,
        failed: int,
        duration_ms: float,
    ) -> None:
        return


@dataclass(slots=True)
class LifecycleRecord:
    event: str
    subject: Any
    details: dict[str, Any]


class RecordingLifecycleProvider(TaskLifecycleProvider, WorkerLifecycleProvider):
    """Keeps every event in memory; handy for tests and local debugging."""

    def __init__(self) -> None:
        self._records: list[LifecycleRecord] = []

    def _record(self, event: str, subject: Any, **details: Any) -> None:
        self._records.append(LifecycleRecord(event=event, subject=subject, details=details))

    @property
    def records(self) -> Iterable[LifecycleRecord]:
        return list(self._records)

    def events(self, name: str) -> list[LifecycleRecord]:
        return [record for record in self._records if record.event == name]

    async def on_task_scheduled(self, ctx: TaskContext) -> None:
        self._record("task_scheduled", ctx)

    async def on_task_started(self, ctx: TaskContext, *, started_at: datetime, queued_duration_ms: float) -> None:
        self._record("task_started", ctx, started_at=started_at, queued_duration_ms=queued_duration_ms)

    async def on_task_completed(self, ctx: TaskContext, *, timing: TaskTiming, result: Any = None) -> None:
        self._record("task_completed", ctx, timing=timing, result=result)

    async def on_task_failed(
        self,
        ctx: TaskContext,
        *,
        timing: TaskTiming,
        error: BaseException,
        will_retry: bool,
        next_attempt_at: datetime | None = None,
    ) -> None:
        self._record("task_failed", ctx, timing=timing, error=error, will_retry=will_retry, next_attempt_at=next_attempt_at)

    async def on_task_exhausted(
        self,
        ctx: TaskContext,
        *,
        timing: TaskTiming,
        error: BaseException,
        total_attempts: int,
    ) -> None:
        self._record("task_exhausted", ctx, timing=timing, error=error, total_attempts=total_attempts)

    async def on_worker_started(self, info: WorkerInfo) -> None:
        self._record("worker_started", info)

    async def on_worker_heartbeat(self, info: WorkerInfo, *, stats: WorkerStats, memory_usage_mb: float) -> None:
        self._record("worker_heartbeat", info, stats=stats, memory_usage_mb=memory_usage_mb)

    async def on_worker_stopped(self, info: WorkerInfo, *, reason: WorkerStopReason, final_stats: WorkerStats) -> None:
        self._record("worker_stopped", info, reason=reason, final_stats=final_stats)

    async def on_batch_started(self, info: WorkerInfo, *, batch_size: int, task_types: list[str]) -> None:
        self._record("batch_started", info, batch_size=batch_size, task_types=task_types)

    async def on_batch_completed(
        self,
        info: WorkerInfo,
        *,
        batch_size: int,
        succeeded: int,
        failed: int,
        duration_ms: float,
    ) -> None:
        self._record(
            "batch_completed",
            info,
            batch_size=batch_size,
            succeeded=succeeded,
            failed=failed,
            duration_ms=duration_ms,
        )


async def emit_lifecycle_event(callback: Callable[..., Awaitable[None]] | None, *args: Any, **kwargs: Any) -> None:
    """Invoke an observer hook; failures are logged and never reach the caller."""
    if callback is None:
        return
    try:
        await callback(*args, **kwargs)
    except Exception as exc:
        logger.warning(
            "lifecycle_callback_failed",
            callback=getattr(callback, "__qualname__", repr(callback)),
            error=str(exc),
        )


def elapsed_ms(start: datetime | None, end: datetime) -> float:
    if start is None:
        return 0.0
    return max(0.0, (end - start).total_seconds() * 1000)
