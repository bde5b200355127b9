from __future__ import annotations

import asyncio

import pytest

from taskq.queue.exceptions import ExecutorConfigurationError, QueueNotRegisteredError
from taskq.queue.models import Task
from taskq.queue.transport import InMemoryMessageQueue
from tests.helpers.stubs import make_task


@pytest.mark.asyncio
async def test_unregistered_queue_is_rejected():
    transport = InMemoryMessageQueue()

    with pytest.raises(QueueNotRegisteredError):
        await transport.add_messages("nowhere", [make_task()])


@pytest.mark.asyncio
async def test_consume_batch_respects_limit_and_order():
    transport = InMemoryMessageQueue()
    transport.register("default")
    tasks = [make_task(task_id=str(index)) for index in range(3)]
    await transport.add_messages("default", tasks)
    delivered: list[list[str]] = []

    async def handler(batch_id: str, batch: list[Task]) -> None:
        delivered.append([task.id for task in batch])

    await transport.consume_messages_batch("default", handler, limit=2)

    assert delivered == [["0", "1"]]
    assert transport.size("default") == 1


@pytest.mark.asyncio
async def test_failed_batch_is_put_back_at_the_head():
    transport = InMemoryMessageQueue()
    transport.register("default")
    await transport.add_messages("default", [make_task(task_id="a"), make_task(task_id="b")])

    async def handler(batch_id: str, batch: list[Task]) -> None:
        raise RuntimeError("storage down")

    with pytest.raises(RuntimeError):
        await transport.consume_messages_batch("default", handler, limit=1)

    assert [task.id for task in transport.peek("default")] == ["a", "b"]


@pytest.mark.asyncio
async def test_stream_stops_when_cancelled():
    transport = InMemoryMessageQueue(poll_interval_seconds=0.01)
    transport.register("default")
    await transport.add_messages("default", [make_task(task_id="a")])
    cancel = asyncio.Event()
    seen: list[str] = []

    async def handler(batch_id: str, batch: list[Task]) -> None:
        seen.extend(task.id for task in batch)
        cancel.set()

    await asyncio.wait_for(transport.consume_messages_stream("default", handler, cancel), timeout=1)

    assert seen == ["a"]


@pytest.mark.asyncio
async def test_stream_retries_after_handler_error():
    transport = InMemoryMessageQueue(poll_interval_seconds=0.01)
    transport.register("default")
    await transport.add_messages("default", [make_task(task_id="a")])
    cancel = asyncio.Event()
    attempts: list[str] = []

    async def handler(batch_id: str, batch: list[Task]) -> None:
        attempts.append(batch_id)
        if len(attempts) == 1:
            raise RuntimeError("transient")
        cancel.set()

    await asyncio.wait_for(transport.consume_messages_stream("default", handler, cancel), timeout=1)

    assert len(attempts) == 2
    assert transport.size("default") == 0


@pytest.mark.asyncio
async def test_stream_propagates_configuration_errors():
    transport = InMemoryMessageQueue(poll_interval_seconds=0.01)
    transport.register("default")
    await transport.add_messages("default", [make_task(task_id="a")])

    async def handler(batch_id: str, batch: list[Task]) -> None:
        raise ExecutorConfigurationError("no async manager")

    with pytest.raises(ExecutorConfigurationError):
        await asyncio.wait_for(transport.consume_messages_stream("default", handler, asyncio.Event()), timeout=1)
