from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from .actions import ExecutorActions
    from .async_actions import AsyncActions
    import asyncio


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    EXECUTED = "executed"
    FAILED = "failed"
    IGNORED = "ignored"


@dataclass(slots=True)
class Task:
    """A unit of work. ``id`` stays ``None`` until something forces a durable write."""

    type: str
    queue_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    execute_at: datetime = field(default_factory=utcnow)
    id: str | None = None
    expires_at: datetime | None = None
    status: TaskStatus = TaskStatus.SCHEDULED
    retries: int | None = None
    retry_after: int | None = None
    execution_stats: dict[str, Any] = field(default_factory=dict)
    execution_result: Any = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    processing_started_at: datetime | None = None
    force_store: bool = False
    task_group: str | None = None
    task_hash: str | None = None

    @property
    def key(self) -> str:
        """Identity used for locks and outcome contexts."""
        if self.id is not None:
            return str(self.id)
        if self.task_hash:
            return f"{self.type}:{self.task_hash}"
        return f"{self.type}:anon:{id(self):x}"

    @property
    def retry_count(self) -> int:
        value = self.execution_stats.get("retry_count") if self.execution_stats else None
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        return 0

    def copy(self, **changes: Any) -> "Task":
        if "execution_stats" not in changes:
            changes["execution_stats"] = dict(self.execution_stats or {})
        return replace(self, **changes)


@dataclass(slots=True, frozen=True)
class AsyncConfig:
    handoff_timeout_ms: int


class TaskExecutor:
    """Base class for executors registered per (queue, task type).

    Dispatch policy is declared with class attributes. ``multiple`` executors receive the
    whole same-type group through :meth:`on_tasks` and the root accumulator; every other
    executor receives one task at a time through :meth:`on_task` and a forked handle.
    """

    multiple: bool = False
    parallel: bool = False
    chunk_size: int = 10
    store_on_failure: bool = False
    default_retries: int = 0
    async_config: AsyncConfig | None = None

    @property
    def handoff_timeout_ms(self) -> int | None:
        if self.async_config is None or not self.async_config.handoff_timeout_ms:
            return None
        return self.async_config.handoff_timeout_ms

    async def on_task(self, task: Task, actions: "ExecutorActions") -> None:
        raise NotImplementedError

    async def on_tasks(self, tasks: Sequence[Task], actions: "ExecutorActions") -> None:
        raise NotImplementedError


@dataclass(slots=True)
class ActionResults:
    failed_tasks: list[Task] = field(default_factory=list)
    success_tasks: list[Task] = field(default_factory=list)
    new_tasks: list[Task] = field(default_factory=list)
    ignored_tasks: list[Task] = field(default_factory=list)

    def extend(self, other: "ActionResults") -> None:
        self.failed_tasks.extend(other.failed_tasks)
        self.success_tasks.extend(other.success_tasks)
        self.new_tasks.extend(other.new_tasks)
        self.ignored_tasks.extend(other.ignored_tasks)


@dataclass(slots=True)
class AsyncTask:
    task: Task
    future: "asyncio.Future[None]"
    start_time: datetime
    actions: "AsyncActions"


@dataclass(slots=True)
class RunResult:
    failed_tasks: list[Task] = field(default_factory=list)
    success_tasks: list[Task] = field(default_factory=list)
    new_tasks: list[Task] = field(default_factory=list)
    ignored_tasks: list[Task] = field(default_factory=list)
    async_tasks: list[AsyncTask] = field(default_factory=list)

    @classmethod
    def from_actions(cls, results: ActionResults, async_tasks: list[AsyncTask]) -> "RunResult":
        return cls(
            failed_tasks=results.failed_tasks,
            success_tasks=results.success_tasks,
            new_tasks=results.new_tasks,
            ignored_tasks=results.ignored_tasks,
            async_tasks=async_tasks,
        )
