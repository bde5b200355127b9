from __future__ import annotations

import asyncio
import contextlib
import uuid
from collections import deque
from typing import Any, Awaitable, Callable, Sequence

from ..core.logging import get_logger
from .exceptions import ExecutorConfigurationError, QueueNotRegisteredError
from .models import Task

logger = get_logger(name=__name__)

MessageConsumer = Callable[[str, list[Task]], Awaitable[Any]]


class MessageQueue:
    """Live transport delivering batches of tasks to a consumer."""

    def register(self, queue: str) -> None:
        raise NotImplementedError

    async def add_messages(self, queue: str, tasks: Sequence[Task]) -> None:
        raise NotImplementedError

    async def consume_messages_stream(
        self,
        queue: str,
        handler: MessageConsumer,
        cancel: asyncio.Event | None = None,
    ) -> None:
        raise NotImplementedError

    async def consume_messages_batch(self, queue: str, handler: MessageConsumer, limit: int = 10) -> None:
        raise NotImplementedError


class InMemoryMessageQueue(MessageQueue):
    """Per-queue FIFO living in the worker process.

    A batch whose handler raises goes back to the head of the queue, so delivery is
    at-least-once like a real broker.
    """

    def __init__(self, *, poll_interval_seconds: float = 1.0, batch_size: int = 10) -> None:
        self._queues: dict[str, deque[Task]] = {}
        self._poll_interval = poll_interval_seconds
        self._batch_size = batch_size

    def register(self, queue: str) -> None:
        self._queues.setdefault(queue, deque())

    def _queue(self, queue: str) -> deque[Task]:
        try:
            return self._queues[queue]
        except KeyError as exc:
            raise QueueNotRegisteredError(f"Queue {queue!r} is not registered") from exc

    def size(self, queue: str) -> int:
        return len(self._queue(queue))

    def peek(self, queue: str) -> list[Task]:
        return list(self._queue(queue))

    async def add_messages(self, queue: str, tasks: Sequence[Task]) -> None:
        self._queue(queue).extend(tasks)
        logger.debug("messages_enqueued", queue=queue, count=len(tasks))

    async def consume_messages_batch(self, queue: str, handler: MessageConsumer, limit: int = 10) -> None:
        pending = self._queue(queue)
        batch = [pending.popleft() for _ in range(min(limit, len(pending)))]
        if not batch:
            return
        await self._deliver(queue, pending, batch, handler)

    async def consume_messages_stream(
        self,
        queue: str,
        handler: MessageConsumer,
        cancel: asyncio.Event | None = None,
    ) -> None:
        pending = self._queue(queue)
        logger.info("queue_consumer_started", queue=queue)
        while cancel is None or not cancel.is_set():
            batch = [pending.popleft() for _ in range(min(self._batch_size, len(pending)))]
            if batch:
                try:
                    await self._deliver(queue, pending, batch, handler)
                    continue
                except ExecutorConfigurationError:
                    raise
                except Exception:
                    # already logged and re-queued; back off before redelivery
                    pass
            await self._pause(cancel)
        logger.info("queue_consumer_stopped", queue=queue)

    async def _pause(self, cancel: asyncio.Event | None) -> None:
        if cancel is None:
            await asyncio.sleep(self._poll_interval)
            return
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(cancel.wait(), timeout=self._poll_interval)

    async def _deliver(
        self,
        queue: str,
        pending: deque[Task],
        batch: list[Task],
        handler: MessageConsumer,
    ) -> None:
        batch_id = f"{queue}:{uuid.uuid4().hex[:12]}"
        try:
            await handler(batch_id, batch)
        except Exception as exc:
            logger.exception("message_batch_failed", queue=queue, batch_id=batch_id, error=str(exc))
            pending.extendleft(reversed(batch))
            raise
