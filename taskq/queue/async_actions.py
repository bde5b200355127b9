from __future__ import annotations

from datetime import timedelta
from typing import Callable

from ..core.logging import get_logger
from .actions import Actions
from .exceptions import AsyncContractViolationError
from .models import Task, utcnow
from .registry import TaskQueuesManager
from .store import TaskStore
from .transport import MessageQueue

logger = get_logger(name=__name__)


class AsyncActions:
    """Finalizer owning one handed-off task's outcome context."""

    def __init__(
        self,
        *,
        transport: MessageQueue,
        store: TaskStore,
        queues: TaskQueuesManager,
        actions: Actions,
        task: Task,
        generate_id: Callable[[], str],
        immediate_window: timedelta = timedelta(minutes=2),
    ) -> None:
        self._transport = transport
        self._store = store
        self._queues = queues
        self._actions = actions
        self._task = task
        self._generate_id = generate_id
        self._immediate_window = immediate_window
        self.task_key = task.key

    async def on_promise_fulfilled(self) -> None:
        """Persist the settled task's outcome. Persistence errors propagate."""
        results = self._actions.extract_task_actions(self.task_key)
        if not results.success_tasks and not results.failed_tasks:
            raise AsyncContractViolationError(
                f"Async task {self.task_key} ({self._task.type}) completed without calling success() or fail()"
            )

        logger.info(
            "async_task_settled",
            task_key=self.task_key,
            succeeded=len(results.success_tasks),
            failed=len(results.failed_tasks),
            new_tasks=len(results.new_tasks),
        )

        if results.failed_tasks:
            await self._store.mark_tasks_as_failed(results.failed_tasks)
        if results.success_tasks:
            await self._store.mark_tasks_as_success(results.success_tasks)
        if results.new_tasks:
            await self._schedule_new_tasks(results.new_tasks)

    async def _schedule_new_tasks(self, tasks: list[Task]) -> None:
        cutoff = utcnow() + self._immediate_window
        immediate: dict[str, list[Task]] = {}
        future: list[Task] = []
        for task in tasks:
            prepared = self._with_id_if_stored(task)
            if prepared.force_store or prepared.execute_at > cutoff:
                future.append(prepared.copy(force_store=False))
            else:
                immediate.setdefault(self._queues.queue_name(prepared.queue_id), []).append(prepared)

        for queue, queue_tasks in immediate.items():
            await self._transport.add_messages(queue, queue_tasks)
            logger.info("async_new_tasks_enqueued", queue=queue, count=len(queue_tasks))

        if future:
            await self._store.add_tasks_to_scheduled(future)
            logger.info("async_new_tasks_scheduled", count=len(future))

    def _with_id_if_stored(self, task: Task) -> Task:
        if task.id is not None or not self._queues.store_on_failure(task.queue_id, task.type):
            return task
        return task.copy(id=self._generate_id())
