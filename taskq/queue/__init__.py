"""Task queue execution engine.

Components, bottom-up:
- TaskQueuesManager: executor registry keyed by (queue, task type)
- Actions: run-scoped outcome accumulator handed to executors
- AsyncActions: finalizer for tasks that outlive their handoff timeout
- TaskRunner: locks, groups and dispatches one delivered batch
- TaskHandler: durable reconciliation, consume loops and mature-task promotion
"""

from .actions import Actions, ExecutorActions, TaskActions
from .async_actions import AsyncActions
from .async_manager import AsyncTaskManager
from .exceptions import (
    AsyncContractViolationError,
    ExecutorConfigurationError,
    LockBatchClosedError,
    QueueNotRegisteredError,
    TaskQueueError,
    TaskStorageError,
)
from .handler import HandlerConfig, TaskHandler
from .lifecycle import RecordingLifecycleProvider, TaskLifecycleProvider, WorkerLifecycleProvider
from .locks import LockBatch, LockManager
from .models import AsyncConfig, RunResult, Task, TaskExecutor, TaskStatus
from .registry import TaskQueuesManager
from .runner import RunnerConfig, TaskRunner
from .store import InMemoryTaskStorageAdapter, TaskStorageAdapter, TaskStore
from .transport import InMemoryMessageQueue, MessageQueue

__all__ = [
    "Actions",
    "ExecutorActions",
    "TaskActions",
    "AsyncActions",
    "AsyncTaskManager",
    "AsyncContractViolationError",
    "ExecutorConfigurationError",
    "LockBatchClosedError",
    "QueueNotRegisteredError",
    "TaskQueueError",
    "TaskStorageError",
    "HandlerConfig",
    "TaskHandler",
    "RecordingLifecycleProvider",
    "TaskLifecycleProvider",
    "WorkerLifecycleProvider",
    "LockBatch",
    "LockManager",
    "AsyncConfig",
    "RunResult",
    "Task",
    "TaskExecutor",
    "TaskStatus",
    "TaskQueuesManager",
    "RunnerConfig",
    "TaskRunner",
    "InMemoryTaskStorageAdapter",
    "TaskStorageAdapter",
    "TaskStore",
    "InMemoryMessageQueue",
    "MessageQueue",
]
