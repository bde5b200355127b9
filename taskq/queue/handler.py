"""Durable reconciliation around the run orchestrator.

:class:`TaskHandler` owns the consume loop of every enabled queue, persists what each run
produced (retries with quadratic backoff, final failures, successes, follow-up tasks),
promotes mature scheduled tasks into the live queue, and reports worker/queue statistics.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import random
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterable, Sequence

import psutil

from ..core.config import Settings
from ..core.logging import get_logger
from ..core.metrics import (
    increment_duplicate_pick,
    increment_mature_promoted,
    increment_task_retry,
    increment_tasks_discarded,
)
from ..services.cache import CacheProvider
from ..services.notifications import (
    DiscardedTaskInfo,
    TaskErrorInfo,
    TaskNotificationProvider,
    TaskQueueStats,
)
from .async_manager import AsyncTaskManager
from .exceptions import ExecutorConfigurationError
from .lifecycle import (
    TaskContext,
    TaskLifecycleProvider,
    TaskTiming,
    WorkerInfo,
    WorkerLifecycleProvider,
    WorkerStats,
    WorkerStopReason,
    build_task_context,
    elapsed_ms,
    emit_lifecycle_event,
)
from .locks import LockManager
from .models import RunResult, Task, TaskStatus, utcnow
from .registry import TaskQueuesManager
from .runner import RunnerConfig, TaskRunner
from .store import TaskStorageAdapter, TaskStore
from .transport import MessageConsumer, MessageQueue

logger = get_logger(name=__name__)

METRICS_KEY_PREFIX = "task_metrics:"
DISCARDED_TASKS_KEY = f"{METRICS_KEY_PREFIX}discarded_tasks"
MATURE_LOCK_PREFIX = "mature_task_lock_:"
MATURE_LOCK_ID = "task_processor"
MATURE_DEDUP_PREFIX = "mature_dedup:"


@dataclass(slots=True)
class HandlerConfig:
    immediate_window_seconds: int = 120
    default_retry_after_ms: int = 2000
    max_retry_delay_ms: int = 5 * 60 * 1000
    handoff_requeue_delay_seconds: int = 30
    stats_threshold: int = 1000
    stats_failure_threshold: int = 100
    mature_interval_seconds: float = 5.0
    mature_lock_ttl_seconds: int = 20
    mature_dedup_ttl_seconds: int = 120
    discard_sample_rate: float = 0.1
    heartbeat_interval_seconds: float = 5.0
    include_payload: bool = False
    instance_id: str = "unknown"
    enabled_queues: list[str] = field(default_factory=list)
    batch_limit: int = 10
    cleanup_enabled: bool = False
    cleanup_interval_seconds: int = 3600
    cleanup_retention_hours: int = 48

    @classmethod
    def from_settings(cls, settings: Settings) -> "HandlerConfig":
        options = settings.reconciliation
        return cls(
            immediate_window_seconds=options.immediate_window_seconds,
            default_retry_after_ms=options.default_retry_after_ms,
            max_retry_delay_ms=options.max_retry_delay_ms,
            handoff_requeue_delay_seconds=options.handoff_requeue_delay_seconds,
            stats_threshold=options.stats_threshold,
            stats_failure_threshold=options.stats_failure_threshold,
            mature_interval_seconds=options.mature_interval_seconds,
            mature_lock_ttl_seconds=options.mature_lock_ttl_seconds,
            mature_dedup_ttl_seconds=options.mature_dedup_ttl_seconds,
            discard_sample_rate=options.discard_sample_rate,
            heartbeat_interval_seconds=settings.lifecycle.heartbeat_interval_seconds,
            include_payload=settings.lifecycle.include_payload,
            instance_id=settings.instance_id,
            enabled_queues=list(settings.queues.enabled),
            batch_limit=settings.queues.batch_size,
            cleanup_enabled=options.cleanup_enabled,
            cleanup_interval_seconds=options.cleanup_interval_seconds,
            cleanup_retention_hours=options.cleanup_retention_hours,
        )


@dataclass(slots=True)
class QueueStats:
    success: int = 0
    failed: int = 0
    async_count: int = 0
    ignored: int = 0

    @property
    def total(self) -> int:
        return self.success + self.failed + self.async_count + self.ignored

    def reset(self) -> None:
        self.success = self.failed = self.async_count = self.ignored = 0


def _is_cancelled(cancel: asyncio.Event | None) -> bool:
    return cancel is not None and cancel.is_set()


def _memory_usage_mb() -> float:
    return psutil.Process().memory_info().rss / 1024 / 1024


class TaskHandler:
    def __init__(
        self,
        *,
        transport: MessageQueue,
        queues: TaskQueuesManager,
        storage: TaskStorageAdapter,
        cache: CacheProvider,
        async_manager: AsyncTaskManager | None = None,
        notification_provider: TaskNotificationProvider | None = None,
        lifecycle_provider: TaskLifecycleProvider | None = None,
        worker_provider: WorkerLifecycleProvider | None = None,
        config: HandlerConfig | None = None,
        runner_config: RunnerConfig | None = None,
    ) -> None:
        self._transport = transport
        self._queues = queues
        self._cache = cache
        self._async_manager = async_manager
        self._notifications = notification_provider
        self._lifecycle = lifecycle_provider
        self._worker_provider = worker_provider
        self._config = config or HandlerConfig()

        self.worker_id = f"{socket.gethostname()}-{os.getpid()}-{int(time.time() * 1000)}"
        self._worker_started_at = utcnow()
        self._worker_started = False
        self._enabled_queues: list[str] = []
        self._worker_stats = WorkerStats()
        self._total_processing_ms = 0.0
        self._queue_stats: dict[str, QueueStats] = {}
        self._heartbeat_task: asyncio.Task[None] | None = None

        self._store = TaskStore(storage, environment_suffix=queues.environment_suffix)
        self._runner = TaskRunner(
            transport=transport,
            queues=queues,
            store=self._store,
            cache=cache,
            lifecycle_provider=lifecycle_provider,
            config=runner_config,
            worker_id=self.worker_id,
        )
        self._mature_lock = LockManager(
            cache,
            prefix=MATURE_LOCK_PREFIX,
            default_timeout=self._config.mature_lock_ttl_seconds,
            owner=self._config.instance_id,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: MessageQueue,
        queues: TaskQueuesManager,
        storage: TaskStorageAdapter,
        cache: CacheProvider,
        **collaborators: Any,
    ) -> "TaskHandler":
        return cls(
            transport=transport,
            queues=queues,
            storage=storage,
            cache=cache,
            config=HandlerConfig.from_settings(settings),
            runner_config=RunnerConfig.from_settings(settings),
            **collaborators,
        )

    @property
    def store(self) -> TaskStore:
        return self._store

    @property
    def runner(self) -> TaskRunner:
        return self._runner

    @property
    def worker_stats(self) -> WorkerStats:
        return self._worker_stats.snapshot()

    def queue_stats(self, queue: str) -> QueueStats | None:
        return self._queue_stats.get(self._queues.queue_name(queue))

    async def add_tasks(self, tasks: Iterable[Task]) -> None:
        """Route tasks due within the immediate window to the live queue and the rest to storage."""
        cutoff = utcnow() + timedelta(seconds=self._config.immediate_window_seconds)
        immediate: dict[str, list[Task]] = {}
        future: dict[str, list[Task]] = {}
        for task in tasks:
            forced = task.force_store
            if forced:
                task = task.copy(force_store=False)
            queue = self._queues.queue_name(task.queue_id)
            bucket = future if forced or task.execute_at > cutoff else immediate
            bucket.setdefault(queue, []).append(self._with_id_if_stored(task))

        for queue, queue_tasks in immediate.items():
            await self._transport.add_messages(queue, queue_tasks)
            for task in queue_tasks:
                await self._emit_task_scheduled(task)

        for queue, queue_tasks in future.items():
            await self._store.add_tasks_to_scheduled(queue_tasks)
            for task in queue_tasks:
                await self._emit_task_scheduled(task)

    def compute_retry_delay_ms(self, task: Task) -> int:
        retry_after = task.retry_after or self._config.default_retry_after_ms
        return min(retry_after * (task.retry_count + 1) ** 2, self._config.max_retry_delay_ms)

    def get_retry_count(self, task: Task) -> int:
        """Maximum retries for ``task``: its own override, else the executor default, else 0."""
        if task.retries is not None:
            return task.retries
        executor = self._queues.get_executor(task.queue_id, task.type)
        return executor.default_retries if executor is not None else 0

    async def post_process_tasks(
        self,
        *,
        failed_tasks: Sequence[Task] = (),
        new_tasks: Sequence[Task] = (),
        success_tasks: Sequence[Task] = (),
    ) -> None:
        """Persist a run's outcome. Storage errors propagate to the caller."""
        to_retry: list[Task] = []
        final_failed: list[Task] = []
        discarded = 0
        now = utcnow()

        for task in failed_tasks:
            retry_count = task.retry_count
            max_retries = self.get_retry_count(task)
            can_retry = retry_count < max_retries
            retried = task.copy(
                status=TaskStatus.SCHEDULED,
                execute_at=now + timedelta(milliseconds=self.compute_retry_delay_ms(task)),
                execution_stats={**(task.execution_stats or {}), "retry_count": retry_count + 1},
            )

            if task.id is not None and can_retry:
                to_retry.append(retried)
                increment_task_retry(queue=task.queue_id, path="upsert")
            elif task.id is not None:
                final_failed.append(task)
            elif can_retry:
                if self._queues.store_on_failure(task.queue_id, task.type):
                    to_retry.append(retried.copy(id=self._store.generate_id()))
                    increment_task_retry(queue=task.queue_id, path="store_on_failure")
                else:
                    await self.add_tasks([retried])
                    increment_task_retry(queue=task.queue_id, path="requeue")
            else:
                discarded += 1
                increment_tasks_discarded(queue=task.queue_id)
                logger.info("task_discarded", task_type=task.type, retry_count=retry_count)
                await self._emit_task_exhausted(task, max_retries)

        if discarded:
            await self._track_discarded_tasks(discarded)
        if to_retry:
            await self._store.update_tasks_for_retry(to_retry)
        if new_tasks:
            await self.add_tasks(new_tasks)
        if final_failed:
            await self._store.mark_tasks_as_failed(final_failed)
        if success_tasks:
            await self._store.mark_tasks_as_success(success_tasks)

    async def consume_batch(
        self,
        queue: str,
        batch_id: str,
        tasks: list[Task],
        cancel: asyncio.Event | None = None,
    ) -> RunResult:
        """Process one delivered batch end to end."""
        if _is_cancelled(cancel):
            logger.info("task_batch_skipped_cancelled", queue=queue, count=len(tasks))
            return RunResult()

        batch_started = time.perf_counter()
        await self._emit_worker_event(
            "on_batch_started",
            batch_size=len(tasks),
            task_types=list(dict.fromkeys(task.type for task in tasks)),
        )

        try:
            result = await self._runner.run(batch_id, tasks, self._async_manager, cancel)
        except ExecutorConfigurationError:
            raise
        except Exception as exc:
            logger.exception("task_run_failed", queue=queue, batch_id=batch_id, error=str(exc))
            result = RunResult()

        if result.async_tasks and self._async_manager is None:
            raise ExecutorConfigurationError("Async tasks detected but no AsyncTaskManager is configured")

        for async_task in result.async_tasks:
            accepted = self._async_manager.handoff_task(async_task.task, async_task.future)  # type: ignore[union-attr]
            if not accepted:
                delay = timedelta(seconds=self._config.handoff_requeue_delay_seconds)
                logger.warning("async_handoff_requeued", task_id=async_task.task.id, delay_seconds=delay.total_seconds())
                await self.add_tasks([async_task.task.copy(execute_at=utcnow() + delay)])

        if result.ignored_tasks:
            logger.warning("task_ignored_batch", queue=queue, count=len(result.ignored_tasks))
            try:
                await self._store.mark_tasks_as_ignored(result.ignored_tasks)
            except Exception as exc:
                logger.error("task_mark_ignored_failed", queue=queue, error=str(exc))

        try:
            await self.post_process_tasks(
                failed_tasks=result.failed_tasks,
                new_tasks=result.new_tasks,
                success_tasks=result.success_tasks,
            )
        except Exception as exc:
            logger.error("task_post_process_failed", queue=queue, batch_id=batch_id, error=str(exc))
            raise

        stats = self._queue_stats.setdefault(queue, QueueStats())
        stats.success += len(result.success_tasks)
        stats.failed += len(result.failed_tasks)
        stats.async_count += len(result.async_tasks)
        stats.ignored += len(result.ignored_tasks)
        await self.report_queue_stats(queue)

        duration_ms = (time.perf_counter() - batch_started) * 1000
        self._update_worker_stats(len(result.success_tasks), len(result.failed_tasks), duration_ms)
        await self._emit_worker_event(
            "on_batch_completed",
            batch_size=len(tasks),
            succeeded=len(result.success_tasks),
            failed=len(result.failed_tasks),
            duration_ms=duration_ms,
        )
        logger.debug(
            "task_batch_completed",
            queue=queue,
            succeeded=len(result.success_tasks),
            failed=len(result.failed_tasks),
            new_tasks=len(result.new_tasks),
            ignored=len(result.ignored_tasks),
        )
        return result

    async def start_consuming_tasks(self, queue: str, cancel: asyncio.Event | None = None) -> None:
        name = self._queues.queue_name(queue)

        async def handle(batch_id: str, tasks: list[Task]) -> RunResult:
            return await self.consume_batch(name, batch_id, tasks, cancel)

        await self._transport.consume_messages_stream(name, handle, cancel)

    async def process_batch(
        self,
        queue: str,
        processor: MessageConsumer,
        limit: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        if _is_cancelled(cancel):
            logger.info("task_batch_processing_skipped_cancelled", queue=queue)
            return
        await self._transport.consume_messages_batch(
            self._queues.queue_name(queue), processor, limit or self._config.batch_limit
        )

    async def task_process_server(self, cancel: asyncio.Event, queues: Sequence[str] | None = None) -> None:
        """Run every consumer, the heartbeat and the mature-task loop until ``cancel`` is set."""
        selected = list(queues or self._config.enabled_queues or self._queues.get_queues())
        self._enabled_queues = [self._queues.queue_name(queue) for queue in selected]

        if not self._worker_started:
            self._worker_started = True
            await self._emit_worker_event("on_worker_started")
            self._start_heartbeat()

        workers: list[asyncio.Task[None]] = []
        for queue in self._enabled_queues:
            logger.info("queue_consumer_starting", queue=queue)
            workers.append(asyncio.create_task(self.start_consuming_tasks(queue, cancel), name=f"taskq-consumer-{queue}"))
        logger.info("mature_task_processor_starting")
        workers.append(asyncio.create_task(self.process_mature_tasks(cancel), name="taskq-mature-tasks"))
        if self._config.cleanup_enabled:
            workers.append(asyncio.create_task(self._cleanup_loop(cancel), name="taskq-cleanup"))

        reason: WorkerStopReason = "shutdown"
        stopper = asyncio.create_task(cancel.wait(), name="taskq-cancel")
        try:
            done, _ = await asyncio.wait({stopper, *workers}, return_when=asyncio.FIRST_COMPLETED)
            if stopper not in done:
                # a loop exited on its own; bring the rest down with it
                reason = "error"
                cancel.set()
        finally:
            stopper.cancel()
            await self._stop_heartbeat()
            outcomes = await asyncio.gather(*workers, return_exceptions=True)
            for worker, outcome in zip(workers, outcomes):
                if isinstance(outcome, BaseException) and not isinstance(outcome, asyncio.CancelledError):
                    reason = "error"
                    logger.error("worker_loop_failed", loop=worker.get_name(), error=str(outcome))
            await self._emit_worker_event("on_worker_stopped", reason=reason, final_stats=self._worker_stats.snapshot())

    async def process_mature_tasks(self, cancel: asyncio.Event | None = None) -> None:
        if _is_cancelled(cancel):
            logger.info("mature_task_processing_not_started_cancelled")
            return
        stop = cancel or asyncio.Event()
        try:
            while not stop.is_set():
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(stop.wait(), timeout=self._config.mature_interval_seconds)
                if stop.is_set():
                    break
                try:
                    await self.promote_mature_tasks()
                except Exception as exc:
                    logger.exception("mature_task_tick_failed", error=str(exc))
        finally:
            logger.info("mature_task_processing_stopped")
            await self.send_final_stats()

    async def promote_mature_tasks(self) -> int:
        """One promotion tick. Returns the number of tasks fed back through :meth:`add_tasks`."""
        if await self._mature_lock.is_locked(MATURE_LOCK_ID):
            logger.info("mature_task_runner_locked")
            return 0
        if not await self._mature_lock.acquire(MATURE_LOCK_ID, self._config.mature_lock_ttl_seconds):
            logger.info("mature_task_lock_not_acquired")
            return 0
        try:
            mature = await self._store.get_mature_tasks(utcnow())
            logger.debug("mature_tasks_found", count=len(mature))
            if mature:
                await self._detect_duplicate_picks(mature)
            await self.add_tasks(mature)
            increment_mature_promoted(len(mature))
            return len(mature)
        except Exception as exc:
            logger.error("mature_task_processing_failed", error=str(exc))
            return 0
        finally:
            await self._mature_lock.release(MATURE_LOCK_ID)

    async def _detect_duplicate_picks(self, tasks: Sequence[Task]) -> None:
        try:
            with_ids = [task for task in tasks if task.id is not None]
            keys = [f"{MATURE_DEDUP_PREFIX}{task.id}" for task in with_ids]
            if not keys:
                return
            previous = await self._cache.mget(keys)
            for task, picker in zip(with_ids, previous):
                if picker:
                    increment_duplicate_pick()
                    logger.warning("duplicate_mature_pick", task_id=task.id, task_type=task.type, previous_picker=picker)
            await self._cache.set_many(
                {key: self._config.instance_id for key in keys},
                ttl=self._config.mature_dedup_ttl_seconds,
            )
        except Exception as exc:
            logger.warning("duplicate_pick_detection_failed", error=str(exc))

    async def _cleanup_loop(self, cancel: asyncio.Event) -> None:
        retention = timedelta(hours=self._config.cleanup_retention_hours)
        while not cancel.is_set():
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(cancel.wait(), timeout=self._config.cleanup_interval_seconds)
            if cancel.is_set():
                break
            try:
                await self._store.cleanup_tasks(retention=retention)
            except Exception as exc:
                logger.exception("task_cleanup_failed", error=str(exc))

    async def _track_discarded_tasks(self, count: int) -> None:
        try:
            now = datetime.now(timezone.utc)
            hour_key = f"{DISCARDED_TASKS_KEY}:{now:%Y-%m-%d-%H}"
            current = int(await self._cache.get(hour_key) or 0)
            await self._cache.set(hour_key, str(current + count), ttl=25 * 3600)

            total = 0
            try:
                if random.random() < self._config.discard_sample_rate:
                    for offset in range(24):
                        past = now - timedelta(hours=offset)
                        total += int(await self._cache.get(f"{DISCARDED_TASKS_KEY}:{past:%Y-%m-%d-%H}") or 0)
                    logger.info("discarded_tasks_tracked", count=count, last_24h_total=total)
                else:
                    logger.info("discarded_tasks_tracked", count=count)
            except Exception as exc:
                logger.warning("discarded_tasks_total_failed", count=count, error=str(exc))
                total = 0

            await self._notify(
                "on_tasks_discarded",
                DiscardedTaskInfo(count=count, last_24_hour_total=total if total > 0 else None),
            )
        except Exception as exc:
            logger.error("discarded_tasks_tracking_failed", error=str(exc))
            await self._notify(
                "on_task_error",
                TaskErrorInfo(error=f"Failed to track discarded tasks: {exc}", context="track_discarded_tasks"),
            )

    async def report_queue_stats(self, queue: str, force: bool = False) -> None:
        stats = self._queue_stats.get(queue)
        if stats is None or stats.total == 0:
            return
        if (
            not force
            and stats.total < self._config.stats_threshold
            and stats.failed < self._config.stats_failure_threshold
        ):
            return

        await self._notify(
            "on_queue_stats",
            TaskQueueStats(
                queue_name=queue,
                success=stats.success,
                failed=stats.failed,
                async_count=stats.async_count,
                ignored=stats.ignored,
                instance_id=self._config.instance_id,
            ),
        )
        logger.info("queue_stats_sent", queue=queue, total=stats.total, failed=stats.failed)
        if not force:
            stats.reset()

    async def send_final_stats(self) -> None:
        for queue in list(self._queue_stats):
            await self.report_queue_stats(queue, force=True)
        if not self._queue_stats:
            await self._notify("on_final_stats", [])
            logger.info("final_stats_sent_empty")

    def _update_worker_stats(self, succeeded: int, failed: int, processing_ms: float) -> None:
        stats = self._worker_stats
        stats.tasks_processed += succeeded + failed
        stats.tasks_succeeded += succeeded
        stats.tasks_failed += failed
        self._total_processing_ms += processing_ms
        if stats.tasks_processed > 0:
            stats.avg_processing_ms = self._total_processing_ms / stats.tasks_processed

    def build_worker_info(self) -> WorkerInfo:
        return WorkerInfo(
            worker_id=self.worker_id,
            hostname=socket.gethostname(),
            pid=os.getpid(),
            started_at=self._worker_started_at,
            enabled_queues=list(self._enabled_queues),
        )

    def _start_heartbeat(self) -> None:
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="taskq-heartbeat")

    async def _stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._heartbeat_task
            self._heartbeat_task = None

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.heartbeat_interval_seconds)
            await self._emit_worker_event(
                "on_worker_heartbeat",
                stats=self._worker_stats.snapshot(),
                memory_usage_mb=_memory_usage_mb(),
            )

    async def _emit_worker_event(self, hook: str, **details: Any) -> None:
        if self._worker_provider is None:
            return
        await emit_lifecycle_event(getattr(self._worker_provider, hook), self.build_worker_info(), **details)

    async def _emit_task_scheduled(self, task: Task) -> None:
        if self._lifecycle is None:
            return
        await emit_lifecycle_event(self._lifecycle.on_task_scheduled, self._task_context(task))

    async def _emit_task_exhausted(self, task: Task, max_retries: int) -> None:
        if self._lifecycle is None:
            return
        message = task.execution_stats.get("last_error") if task.execution_stats else None
        await emit_lifecycle_event(
            self._lifecycle.on_task_exhausted,
            self._task_context(task, max_retries=max_retries),
            timing=TaskTiming(
                queued_duration_ms=0.0,
                processing_duration_ms=0.0,
                total_duration_ms=elapsed_ms(task.created_at, utcnow()),
            ),
            error=RuntimeError(message or "Task exhausted all retries"),
            total_attempts=task.retry_count + 1,
        )

    def _task_context(self, task: Task, *, max_retries: int | None = None) -> TaskContext:
        return build_task_context(
            task,
            max_retries=self.get_retry_count(task) if max_retries is None else max_retries,
            include_payload=self._config.include_payload,
        )

    async def _notify(self, hook: str, payload: Any) -> None:
        if self._notifications is None:
            return
        callback: Callable[[Any], Awaitable[None]] = getattr(self._notifications, hook)
        try:
            await callback(payload)
        except Exception as exc:
            logger.error("task_notification_failed", hook=hook, error=str(exc))

    def _with_id_if_stored(self, task: Task) -> Task:
        if task.id is not None or not self._queues.store_on_failure(task.queue_id, task.type):
            return task
        return task.copy(id=self._store.generate_id())
