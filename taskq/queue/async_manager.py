from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable

from ..core.config import Settings
from ..core.logging import get_logger
from ..core.metrics import record_async_handoff, set_async_tasks_active
from .models import Task

logger = get_logger(name=__name__)


@dataclass(slots=True)
class AsyncTaskMetrics:
    active: int
    capacity: int
    handed_off: int
    completed: int
    rejected: int


class AsyncTaskManager:
    """Tracks tasks that outlived their handoff timeout until they settle."""

    def __init__(self, *, max_tasks: int = 100) -> None:
        self._max_tasks = max_tasks
        self._in_flight: dict[str, asyncio.Future[Any]] = {}
        self._handed_off = 0
        self._completed = 0
        self._rejected = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "AsyncTaskManager":
        return cls(max_tasks=settings.async_tasks.max_tasks)

    def can_accept_task(self) -> bool:
        return len(self._in_flight) < self._max_tasks

    def is_handed_off(self, task_id: str) -> bool:
        return str(task_id) in self._in_flight

    def handoff_task(self, task: Task, work: Awaitable[Any]) -> bool:
        """Start tracking ``work``. Returns ``False`` when the task has no id or the manager is full."""
        if task.id is None:
            logger.error("async_handoff_rejected_missing_id", task_type=task.type)
            self._reject()
            return False
        if not self.can_accept_task():
            logger.warning("async_handoff_rejected_full", task_id=task.id, active=len(self._in_flight))
            self._reject()
            return False

        key = str(task.id)
        future = asyncio.ensure_future(work)
        self._in_flight[key] = future
        self._handed_off += 1
        record_async_handoff(accepted=True)
        set_async_tasks_active(len(self._in_flight))
        future.add_done_callback(lambda done, key=key: self._on_done(key, done))
        logger.info("async_task_handed_off", task_id=key, task_type=task.type, active=len(self._in_flight))
        return True

    def get_metrics(self) -> AsyncTaskMetrics:
        return AsyncTaskMetrics(
            active=len(self._in_flight),
            capacity=self._max_tasks,
            handed_off=self._handed_off,
            completed=self._completed,
            rejected=self._rejected,
        )

    async def shutdown(self, grace_seconds: float = 10.0) -> None:
        pending = list(self._in_flight.values())
        if not pending:
            return
        logger.info("async_task_manager_draining", active=len(pending), grace_seconds=grace_seconds)
        _, still_running = await asyncio.wait(pending, timeout=grace_seconds)
        for future in still_running:
            future.cancel()
        if still_running:
            logger.warning("async_task_manager_cancelled", cancelled=len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)

    def _reject(self) -> None:
        self._rejected += 1
        record_async_handoff(accepted=False)

    def _on_done(self, key: str, future: asyncio.Future[Any]) -> None:
        self._in_flight.pop(key, None)
        self._completed += 1
        set_async_tasks_active(len(self._in_flight))
        if future.cancelled():
            logger.warning("async_task_cancelled", task_id=key)
            return
        error = future.exception()
        if error is not None:
            logger.error("async_task_errored", task_id=key, error=str(error))
