"""Run orchestration for one delivered batch.

A run locks the tasks it will own, groups them by type in first-seen order and dispatches
each group according to its executor's policy: ``multiple`` (one call for the whole group),
``parallel`` (sequential chunks, concurrent inside a chunk) or serial. A serial executor with
an async handoff timeout races each task against that timeout; a task still running when the
timer fires is handed to the async task manager and finalized independently.

Every lock acquired by a run is released when the run exits, whatever the exit path.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Sequence

from ..core.config import Settings
from ..core.logging import get_logger
from ..core.metrics import increment_lock_skipped, observe_run_latency, record_task_outcomes
from ..services.cache import CacheProvider
from .actions import Actions
from .async_actions import AsyncActions
from .async_manager import AsyncTaskManager
from .exceptions import ExecutorConfigurationError
from .lifecycle import (
    TaskContext,
    TaskLifecycleProvider,
    TaskTiming,
    build_task_context,
    elapsed_ms,
    emit_lifecycle_event,
)
from .locks import LockBatch, LockManager
from .models import AsyncTask, RunResult, Task, TaskExecutor, TaskStatus, utcnow
from .registry import TaskQueuesManager
from .store import TaskStore
from .transport import MessageQueue

logger = get_logger(name=__name__)


@dataclass(slots=True)
class RunnerConfig:
    lock_prefix: str = "task_lock_"
    lock_timeout_seconds: int = 30 * 60
    backpressure_delay_seconds: int = 180
    immediate_window_seconds: int = 120
    include_payload: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "RunnerConfig":
        return cls(
            lock_prefix=settings.runner.lock_prefix,
            lock_timeout_seconds=settings.runner.lock_timeout_seconds,
            backpressure_delay_seconds=settings.runner.backpressure_delay_seconds,
            immediate_window_seconds=settings.reconciliation.immediate_window_seconds,
            include_payload=settings.lifecycle.include_payload,
        )


def group_by_type(tasks: Sequence[Task]) -> dict[str, list[Task]]:
    """Partition tasks by type; dict insertion order keeps first-seen type order."""
    groups: dict[str, list[Task]] = {}
    for task in tasks:
        groups.setdefault(task.type, []).append(task)
    return groups


def _chunks(tasks: Sequence[Task], size: int) -> list[list[Task]]:
    size = max(1, size)
    return [list(tasks[index : index + size]) for index in range(0, len(tasks), size)]


def _is_cancelled(cancel: asyncio.Event | None) -> bool:
    return cancel is not None and cancel.is_set()


class TaskRunner:
    def __init__(
        self,
        *,
        transport: MessageQueue,
        queues: TaskQueuesManager,
        store: TaskStore,
        cache: CacheProvider,
        lifecycle_provider: TaskLifecycleProvider | None = None,
        config: RunnerConfig | None = None,
        worker_id: str | None = None,
    ) -> None:
        self._transport = transport
        self._queues = queues
        self._store = store
        self._lifecycle = lifecycle_provider
        self._config = config or RunnerConfig()
        self._worker_id = worker_id
        self._lock_manager = LockManager(
            cache,
            prefix=self._config.lock_prefix,
            default_timeout=self._config.lock_timeout_seconds,
            owner=worker_id or "locked",
        )
        self._task_start_times: dict[str, datetime] = {}

    @property
    def lock_manager(self) -> LockManager:
        return self._lock_manager

    async def run(
        self,
        runner_id: str,
        tasks: Sequence[Task],
        async_manager: AsyncTaskManager | None = None,
        cancel: asyncio.Event | None = None,
    ) -> RunResult:
        log = logger.bind(runner_id=runner_id)
        log.info("task_run_started", delivered=len(tasks))

        if _is_cancelled(cancel):
            log.info("task_run_skipped_cancelled")
            return RunResult()

        queue_label = tasks[0].queue_id if tasks else "unknown"
        started = time.perf_counter()

        unlocked = await self._lock_manager.filter_locked(tasks, lambda task: task.key)
        increment_lock_skipped(queue=queue_label, count=len(tasks) - len(unlocked))
        log.info("task_run_unlocked_tasks", count=len(unlocked))

        async with LockBatch(
            self._lock_manager,
            on_release_error=lambda lock_id, exc: log.error(
                "task_lock_release_failed", lock_id=lock_id, error=str(exc)
            ),
        ) as locks:
            owned: list[Task] = []
            for task in unlocked:
                if await locks.acquire(task.key):
                    owned.append(task)
                else:
                    log.info("task_lock_contended", task_key=task.key, task_type=task.type)

            groups = group_by_type(owned)
            log.info("task_run_groups", groups={task_type: len(group) for task_type, group in groups.items()})

            actions = Actions(runner_id)
            async_tasks: list[AsyncTask] = []
            untracked: list[str] = []

            for task_type, group in groups.items():
                if _is_cancelled(cancel):
                    log.info("task_run_cancelled_between_groups", remaining_type=task_type)
                    break
                await self._dispatch_group(
                    runner_id,
                    task_type,
                    group,
                    actions=actions,
                    async_tasks=async_tasks,
                    untracked=untracked,
                    async_manager=async_manager,
                )

            excluded = [async_task.task.key for async_task in async_tasks] + untracked
            harvested = actions.extract_sync_results(excluded)

        observe_run_latency(queue=queue_label, latency=time.perf_counter() - started)
        record_task_outcomes(queue=queue_label, outcome="success", count=len(harvested.success_tasks))
        record_task_outcomes(queue=queue_label, outcome="failed", count=len(harvested.failed_tasks))
        record_task_outcomes(queue=queue_label, outcome="ignored", count=len(harvested.ignored_tasks))
        record_task_outcomes(queue=queue_label, outcome="async", count=len(async_tasks))
        log.info(
            "task_run_completed",
            succeeded=len(harvested.success_tasks),
            failed=len(harvested.failed_tasks),
            new_tasks=len(harvested.new_tasks),
            async_tasks=len(async_tasks),
            ignored=len(harvested.ignored_tasks),
        )
        return RunResult.from_actions(harvested, async_tasks)

    async def _dispatch_group(
        self,
        runner_id: str,
        task_type: str,
        group: list[Task],
        *,
        actions: Actions,
        async_tasks: list[AsyncTask],
        untracked: list[str],
        async_manager: AsyncTaskManager | None,
    ) -> None:
        log = logger.bind(runner_id=runner_id, task_type=task_type)
        queue = group[0].queue_id
        executor = self._queues.get_executor(queue, task_type)

        if executor is None:
            log.warning("task_executor_missing", queue=queue, count=len(group))
            for task in group:
                actions.add_ignored_task(task if task.id is not None else task.copy(id=self._store.generate_id()))
            return

        timeout_ms = executor.handoff_timeout_ms
        if timeout_ms and async_manager is not None and not async_manager.can_accept_task():
            await self._reschedule_for_backpressure(group, log)
            return

        log.info("task_group_dispatching", count=len(group))

        if executor.multiple:
            try:
                await executor.on_tasks(group, actions)
            except Exception as exc:
                log.error("executor_on_tasks_failed", error=str(exc))
                for task in group:
                    if actions.get_task_result_status(task.key) == "pending":
                        actions.fail(task, exc)
            return

        if executor.parallel:
            for chunk in _chunks(group, executor.chunk_size):
                for task in chunk:
                    await self._emit_started(task, runner_id, executor)
                await asyncio.gather(*(self._execute(executor, task, actions, log) for task in chunk))
                for task in chunk:
                    await self._emit_completion(task, runner_id, executor, actions)
            return

        for task in group:
            await self._emit_started(task, runner_id, executor)
            if not timeout_ms:
                await self._execute(executor, task, actions, log)
                await self._emit_completion(task, runner_id, executor, actions)
                continue

            start_time = utcnow()
            execution = asyncio.ensure_future(self._execute(executor, task, actions, log))
            done, _ = await asyncio.wait({execution}, timeout=timeout_ms / 1000)
            if execution in done:
                await self._emit_completion(task, runner_id, executor, actions)
                continue

            log.info("task_handoff_timeout_exceeded", task_key=task.key, timeout_ms=timeout_ms)
            self._task_start_times.pop(task.key, None)
            if async_manager is None:
                execution.cancel()
                raise ExecutorConfigurationError(
                    f"Task {task.type} exceeded its handoff timeout but no AsyncTaskManager is configured"
                )
            if task.id is None:
                log.error("task_handoff_untracked", task_key=task.key)
                untracked.append(task.key)
                continue

            finalizer = AsyncActions(
                transport=self._transport,
                store=self._store,
                queues=self._queues,
                actions=actions,
                task=task,
                generate_id=self._store.generate_id,
                immediate_window=timedelta(seconds=self._config.immediate_window_seconds),
            )
            future = asyncio.ensure_future(self._finalize_async(execution, finalizer, runner_id))
            async_tasks.append(AsyncTask(task=task, future=future, start_time=start_time, actions=finalizer))

    async def _execute(self, executor: TaskExecutor, task: Task, actions: Actions, log: Any) -> None:
        handle = actions.fork_for_task(task)
        try:
            await executor.on_task(task, handle)
        except Exception as exc:
            log.error("executor_on_task_failed", task_key=task.key, error=str(exc))
            if actions.get_task_result_status(task.key) == "pending":
                actions.fail(task, exc)

    async def _finalize_async(self, execution: asyncio.Future[None], finalizer: AsyncActions, runner_id: str) -> None:
        try:
            await execution
        finally:
            try:
                await finalizer.on_promise_fulfilled()
            except Exception as exc:
                logger.exception(
                    "async_actions_failed",
                    runner_id=runner_id,
                    task_key=finalizer.task_key,
                    error=str(exc),
                )

    async def _reschedule_for_backpressure(self, group: list[Task], log: Any) -> None:
        delay = timedelta(seconds=self._config.backpressure_delay_seconds)
        execute_at = utcnow() + delay
        rescheduled = [
            task.copy(
                id=task.id if task.id is not None else self._store.generate_id(),
                execute_at=execute_at,
                status=TaskStatus.SCHEDULED,
            )
            for task in group
        ]
        log.warning("async_queue_full_rescheduling", count=len(group), delay_seconds=delay.total_seconds())
        await self._store.update_tasks_for_retry(rescheduled)

    def _max_retries(self, task: Task, executor: TaskExecutor | None) -> int:
        if task.retries is not None:
            return task.retries
        return executor.default_retries if executor is not None else 0

    def _context(self, task: Task, runner_id: str, executor: TaskExecutor | None) -> TaskContext:
        return build_task_context(
            task,
            max_retries=self._max_retries(task, executor),
            include_payload=self._config.include_payload,
            worker_id=self._worker_id or runner_id,
        )

    async def _emit_started(self, task: Task, runner_id: str, executor: TaskExecutor) -> None:
        started_at = utcnow()
        self._task_start_times[task.key] = started_at
        if self._lifecycle is None:
            return
        await emit_lifecycle_event(
            self._lifecycle.on_task_started,
            self._context(task, runner_id, executor),
            started_at=started_at,
            queued_duration_ms=elapsed_ms(task.created_at, started_at),
        )

    async def _emit_completion(self, task: Task, runner_id: str, executor: TaskExecutor, actions: Actions) -> None:
        completed_at = utcnow()
        started_at = self._task_start_times.pop(task.key, None) or completed_at
        if self._lifecycle is None:
            return
        status = actions.get_task_result_status(task.key)
        if status == "pending":
            return
        timing = TaskTiming(
            queued_duration_ms=elapsed_ms(task.created_at, started_at),
            processing_duration_ms=elapsed_ms(started_at, completed_at),
            total_duration_ms=elapsed_ms(task.created_at, completed_at),
        )
        ctx = self._context(task, runner_id, executor)
        if status == "success":
            await emit_lifecycle_event(
                self._lifecycle.on_task_completed,
                ctx,
                timing=timing,
                result=actions.get_task_result(task.key),
            )
            return
        error = actions.get_task_error(task.key)
        await emit_lifecycle_event(
            self._lifecycle.on_task_failed,
            ctx,
            timing=timing,
            error=error if isinstance(error, BaseException) else RuntimeError(error or "Task failed"),
            will_retry=task.retry_count < self._max_retries(task, executor),
        )
