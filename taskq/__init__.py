"""taskq: a distributed task-queue execution engine."""

from .queue import (
    Actions,
    AsyncConfig,
    AsyncTaskManager,
    Task,
    TaskExecutor,
    TaskHandler,
    TaskQueuesManager,
    TaskRunner,
    TaskStatus,
)

__all__ = [
    "Actions",
    "AsyncConfig",
    "AsyncTaskManager",
    "Task",
    "TaskExecutor",
    "TaskHandler",
    "TaskQueuesManager",
    "TaskRunner",
    "TaskStatus",
]

__version__ = "0.1.0"
