from __future__ import annotations

from typing import TYPE_CHECKING, Dict

from ..core.config import Settings
from ..core.logging import get_logger
from .models import TaskExecutor

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from .transport import MessageQueue

__all__ = ["environment_queue_name", "TaskQueuesManager"]

logger = get_logger(name=__name__)


def environment_queue_name(queue: str, suffix: str | None) -> str:
    """Qualify ``queue`` with the deployment suffix. Applying it twice is a no-op."""
    name = queue.strip()
    if not suffix:
        return name
    qualified_tail = f"-{suffix}"
    if name.endswith(qualified_tail):
        return name
    return f"{name}{qualified_tail}"


class TaskQueuesManager:
    """Maps (queue, task type) to the executor that handles it."""

    def __init__(self, transport: "MessageQueue | None" = None, *, environment_suffix: str | None = None) -> None:
        self._transport = transport
        self._environment_suffix = environment_suffix
        self._executors: Dict[str, Dict[str, TaskExecutor]] = {}

    @classmethod
    def from_settings(cls, settings: Settings, transport: "MessageQueue | None" = None) -> "TaskQueuesManager":
        return cls(transport, environment_suffix=settings.queues.environment_suffix)

    @property
    def environment_suffix(self) -> str | None:
        return self._environment_suffix

    def queue_name(self, queue: str) -> str:
        return environment_queue_name(queue, self._environment_suffix)

    def register(self, queue: str, task_type: str, executor: TaskExecutor) -> None:
        name = self.queue_name(queue)
        if self._transport is not None:
            self._transport.register(name)
        self._executors.setdefault(name, {})[task_type] = executor
        logger.info("task_executor_registered", queue=name, task_type=task_type, executor=type(executor).__name__)

    def get_executor(self, queue: str, task_type: str) -> TaskExecutor | None:
        executors = self._executors.get(self.queue_name(queue))
        if executors is None:
            return None
        return executors.get(task_type)

    def get_queues(self) -> list[str]:
        return list(self._executors)

    def get_task_types_for_queue(self, queue: str) -> list[str]:
        return list(self._executors.get(self.queue_name(queue), {}))

    def store_on_failure(self, queue: str, task_type: str) -> bool:
        executor = self.get_executor(queue, task_type)
        return bool(executor and executor.store_on_failure)

    def clear(self) -> None:
        self._executors.clear()
