from __future__ import annotations


class TaskQueueError(RuntimeError):
    """Base class for task queue failures."""


class ExecutorConfigurationError(TaskQueueError):
    """Raised when the worker is wired incorrectly, e.g. async handoff without an async task manager."""


class AsyncContractViolationError(TaskQueueError):
    """Raised when a handed-off task settles without recording success or failure."""


class QueueNotRegisteredError(TaskQueueError):
    """Raised when the transport is asked to use a queue nobody registered."""


class LockBatchClosedError(TaskQueueError):
    """Raised when acquiring through a lock batch whose scope already exited."""


class TaskStorageError(TaskQueueError):
    """Raised when the storage adapter rejects a write."""
