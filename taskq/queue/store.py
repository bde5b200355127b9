from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Iterable, Sequence

from ..core.logging import get_logger
from .exceptions import TaskStorageError
from .models import Task, TaskStatus, utcnow
from .registry import environment_queue_name

logger = get_logger(name=__name__)


@dataclass(slots=True)
class CleanupStats:
    orphaned_tasks: int
    expired_tasks: int


class TaskStorageAdapter:
    """Durable task records. Implementations back the scheduled store and failure records."""

    async def add_tasks_to_scheduled(self, tasks: Sequence[Task]) -> list[Task]:
        raise NotImplementedError

    async def get_mature_tasks(self, now: datetime) -> list[Task]:
        raise NotImplementedError

    async def mark_tasks_as_executed(self, tasks: Sequence[Task]) -> None:
        raise NotImplementedError

    async def upsert_tasks(self, tasks: Sequence[Task]) -> None:
        """Create or update by id, keeping stored fields the update leaves unset (notably payload)."""
        raise NotImplementedError

    async def get_tasks_by_ids(self, task_ids: Sequence[str]) -> list[Task]:
        raise NotImplementedError

    async def get_cleanup_stats(self, *, orphaned_before: datetime, now: datetime) -> CleanupStats:
        raise NotImplementedError

    async def cleanup_tasks(self, *, orphaned_before: datetime, expired_before: datetime) -> int:
        raise NotImplementedError

    def generate_id(self) -> str:
        return uuid.uuid4().hex

    async def initialize(self) -> None:
        return

    async def close(self) -> None:
        return

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["TaskStorageAdapter"]:
        await self.initialize()
        try:
            yield self
        finally:
            await self.close()


class InMemoryTaskStorageAdapter(TaskStorageAdapter):
    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}

    async def add_tasks_to_scheduled(self, tasks: Sequence[Task]) -> list[Task]:
        added: list[Task] = []
        for task in tasks:
            record = task if task.id is not None else task.copy(id=self.generate_id())
            self._tasks[str(record.id)] = record.copy()
            added.append(record)
        return added

    async def get_mature_tasks(self, now: datetime) -> list[Task]:
        # Claims what it returns so the next promotion tick does not pick it again.
        mature: list[Task] = []
        for task in self._tasks.values():
            if task.status is TaskStatus.SCHEDULED and task.execute_at <= now:
                task.status = TaskStatus.PROCESSING
                task.processing_started_at = now
                mature.append(task.copy())
        return mature

    async def mark_tasks_as_executed(self, tasks: Sequence[Task]) -> None:
        now = utcnow()
        for task in tasks:
            stored = self._tasks.get(str(task.id)) if task.id is not None else None
            if stored is None:
                continue
            stored.status = TaskStatus.EXECUTED
            stored.updated_at = now
            if task.execution_result is not None:
                stored.execution_result = task.execution_result

    async def upsert_tasks(self, tasks: Sequence[Task]) -> None:
        for task in tasks:
            if task.id is None:
                raise TaskStorageError(f"Cannot upsert task of type {task.type!r} without an id")
            key = str(task.id)
            existing = self._tasks.get(key)
            incoming = task.copy(updated_at=utcnow())
            self._tasks[key] = incoming if existing is None else _merge(existing, incoming)

    async def get_tasks_by_ids(self, task_ids: Sequence[str]) -> list[Task]:
        return [self._tasks[str(task_id)].copy() for task_id in task_ids if str(task_id) in self._tasks]

    async def get_cleanup_stats(self, *, orphaned_before: datetime, now: datetime) -> CleanupStats:
        orphaned = sum(1 for task in self._tasks.values() if _is_orphaned(task, orphaned_before))
        expired = sum(1 for task in self._tasks.values() if task.expires_at is not None and task.expires_at < now)
        return CleanupStats(orphaned_tasks=orphaned, expired_tasks=expired)

    async def cleanup_tasks(self, *, orphaned_before: datetime, expired_before: datetime) -> int:
        doomed = [
            key
            for key, task in self._tasks.items()
            if _is_orphaned(task, orphaned_before)
            or (task.expires_at is not None and task.expires_at < expired_before)
        ]
        for key in doomed:
            del self._tasks[key]
        return len(doomed)

    async def close(self) -> None:
        self._tasks.clear()

    @property
    def tasks(self) -> list[Task]:
        return [task.copy() for task in self._tasks.values()]

    def get(self, task_id: str) -> Task | None:
        stored = self._tasks.get(str(task_id))
        return stored.copy() if stored is not None else None


def _is_orphaned(task: Task, before: datetime) -> bool:
    return (
        task.status is TaskStatus.PROCESSING
        and task.processing_started_at is not None
        and task.processing_started_at < before
    )


def _merge(existing: Task, incoming: Task) -> Task:
    changes: dict[str, Any] = {}
    for item in fields(Task):
        value = getattr(incoming, item.name)
        if value is None:
            continue
        if item.name == "payload" and not value:
            continue
        if item.name == "execution_stats":
            value = {**(existing.execution_stats or {}), **value}
        changes[item.name] = value
    return existing.copy(**changes)


class TaskStore:
    """Normalizing facade over a :class:`TaskStorageAdapter`."""

    def __init__(self, adapter: TaskStorageAdapter, *, environment_suffix: str | None = None) -> None:
        self._adapter = adapter
        self._environment_suffix = environment_suffix

    @property
    def adapter(self) -> TaskStorageAdapter:
        return self._adapter

    def generate_id(self) -> str:
        return self._adapter.generate_id()

    async def add_tasks_to_scheduled(self, tasks: Iterable[Task]) -> list[Task]:
        now = utcnow()
        normalized = [
            task.copy(
                queue_id=environment_queue_name(task.queue_id, self._environment_suffix),
                status=TaskStatus.SCHEDULED,
                retries=task.retries,
                created_at=task.created_at or now,
                updated_at=task.updated_at or now,
                processing_started_at=task.processing_started_at or now,
            )
            for task in tasks
        ]
        if not normalized:
            return []
        return await self._adapter.add_tasks_to_scheduled(normalized)

    async def get_mature_tasks(self, now: datetime) -> list[Task]:
        return await self._adapter.get_mature_tasks(now)

    async def mark_tasks_as_executed(self, tasks: Sequence[Task]) -> None:
        await self._adapter.mark_tasks_as_executed(tasks)

    async def mark_tasks_as_success(self, tasks: Sequence[Task]) -> None:
        await self._adapter.mark_tasks_as_executed(tasks)

    async def mark_tasks_as_failed(self, tasks: Sequence[Task]) -> None:
        failed_at = utcnow()
        await self._adapter.upsert_tasks(
            [
                task.copy(
                    status=TaskStatus.FAILED,
                    execution_stats={**(task.execution_stats or {}), "failed_at": failed_at},
                )
                for task in tasks
            ]
        )

    async def mark_tasks_as_ignored(self, tasks: Sequence[Task]) -> None:
        ignored_at = utcnow()
        await self._adapter.upsert_tasks(
            [
                task.copy(
                    status=TaskStatus.IGNORED,
                    execution_stats={
                        **(task.execution_stats or {}),
                        "error": "No executor found for task type",
                        "ignored_reason": "unknown_executor",
                        "ignored_at": ignored_at,
                    },
                )
                for task in tasks
            ]
        )

    async def update_tasks_for_retry(self, tasks: Sequence[Task]) -> None:
        await self._adapter.upsert_tasks(tasks)

    async def get_tasks_by_ids(self, task_ids: Sequence[str]) -> list[Task]:
        return await self._adapter.get_tasks_by_ids(task_ids)

    async def get_cleanup_stats(self, *, retention: timedelta = timedelta(days=2)) -> CleanupStats:
        now = utcnow()
        return await self._adapter.get_cleanup_stats(orphaned_before=now - retention, now=now)

    async def cleanup_tasks(self, *, retention: timedelta = timedelta(days=2)) -> int:
        now = utcnow()
        removed = await self._adapter.cleanup_tasks(orphaned_before=now - retention, expired_before=now)
        logger.info("task_cleanup_completed", removed=removed)
        return removed
