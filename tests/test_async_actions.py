from __future__ import annotations

from datetime import timedelta

import pytest

from taskq.queue.actions import Actions
from taskq.queue.async_actions import AsyncActions
from taskq.queue.exceptions import AsyncContractViolationError, TaskStorageError
from taskq.queue.models import TaskStatus, utcnow
from taskq.queue.registry import TaskQueuesManager
from taskq.queue.store import InMemoryTaskStorageAdapter, TaskStore
from taskq.queue.transport import InMemoryMessageQueue
from tests.helpers.stubs import FailingExecutor, SucceedingExecutor, make_task


def build(task_id: str = "a-1"):
    transport = InMemoryMessageQueue()
    queues = TaskQueuesManager(transport)
    queues.register("default", "slow", SucceedingExecutor())
    queues.register("default", "durable", FailingExecutor(store_on_failure=True))
    queues.register("default", "volatile", SucceedingExecutor())
    adapter = InMemoryTaskStorageAdapter()
    store = TaskStore(adapter)
    actions = Actions("run-1")
    task = make_task("slow", task_id=task_id)
    finalizer = AsyncActions(
        transport=transport,
        store=store,
        queues=queues,
        actions=actions,
        task=task,
        generate_id=lambda: "generated-id",
    )
    return finalizer, actions, task, adapter, transport


@pytest.mark.asyncio
async def test_settled_success_is_marked_executed():
    finalizer, actions, task, adapter, _ = build()
    await adapter.upsert_tasks([task])
    actions.fork_for_task(task).success(task, {"ok": True})

    await finalizer.on_promise_fulfilled()

    stored = adapter.get("a-1")
    assert stored.status is TaskStatus.EXECUTED
    assert stored.execution_result == {"ok": True}


@pytest.mark.asyncio
async def test_settled_failure_is_marked_failed():
    finalizer, actions, task, adapter, _ = build()
    actions.fork_for_task(task).fail(task, "downstream timeout")

    await finalizer.on_promise_fulfilled()

    stored = adapter.get("a-1")
    assert stored.status is TaskStatus.FAILED
    assert stored.execution_stats["last_error"] == "downstream timeout"
    assert "failed_at" in stored.execution_stats


@pytest.mark.asyncio
async def test_settling_without_outcome_violates_contract():
    finalizer, actions, task, _, _ = build()
    actions.fork_for_task(task)

    with pytest.raises(AsyncContractViolationError):
        await finalizer.on_promise_fulfilled()


@pytest.mark.asyncio
async def test_new_tasks_are_split_between_queue_and_scheduled_store():
    finalizer, actions, task, adapter, transport = build()
    soon = make_task("volatile")
    durable_soon = make_task("durable")
    later = make_task("volatile", execute_at=utcnow() + timedelta(hours=1))
    forced = make_task("volatile", force_store=True)
    handle = actions.fork_for_task(task)
    handle.add_tasks([soon, durable_soon, later, forced])
    handle.success(task)

    await finalizer.on_promise_fulfilled()

    queued = transport.peek("default")
    assert queued[0] == soon and queued[0].id is None
    assert queued[1].id == "generated-id"
    scheduled = [stored for stored in adapter.tasks if stored.type == "volatile"]
    assert len(scheduled) == 2
    assert all(stored.force_store is False for stored in scheduled)
    assert all(stored.status is TaskStatus.SCHEDULED for stored in scheduled)


@pytest.mark.asyncio
async def test_failure_write_without_id_propagates():
    actions = Actions("run-2")
    anonymous = make_task("slow")
    finalizer = AsyncActions(
        transport=InMemoryMessageQueue(),
        store=TaskStore(InMemoryTaskStorageAdapter()),
        queues=TaskQueuesManager(),
        actions=actions,
        task=anonymous,
        generate_id=lambda: "unused",
    )
    actions.fork_for_task(anonymous).fail(anonymous, "boom")

    with pytest.raises(TaskStorageError):
        await finalizer.on_promise_fulfilled()
