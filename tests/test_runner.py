from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from taskq.queue.async_manager import AsyncTaskManager
from taskq.queue.exceptions import ExecutorConfigurationError
from taskq.queue.lifecycle import RecordingLifecycleProvider
from taskq.queue.models import TaskStatus, utcnow
from taskq.queue.registry import TaskQueuesManager
from taskq.queue.runner import RunnerConfig, TaskRunner, group_by_type
from taskq.queue.store import InMemoryTaskStorageAdapter, TaskStore
from taskq.queue.transport import InMemoryMessageQueue
from taskq.services.cache import InMemoryCacheProvider
from tests.helpers.stubs import (
    BatchExecutor,
    DoubleOutcomeExecutor,
    FailingExecutor,
    ParallelExecutor,
    RaisingExecutor,
    SilentExecutor,
    SlowExecutor,
    SucceedingExecutor,
    make_task,
)


def build_runner(
    *,
    cache: InMemoryCacheProvider | None = None,
    lifecycle: RecordingLifecycleProvider | None = None,
) -> tuple[TaskRunner, TaskQueuesManager, InMemoryTaskStorageAdapter, InMemoryMessageQueue]:
    transport = InMemoryMessageQueue()
    queues = TaskQueuesManager(transport)
    adapter = InMemoryTaskStorageAdapter()
    runner = TaskRunner(
        transport=transport,
        queues=queues,
        store=TaskStore(adapter),
        cache=cache or InMemoryCacheProvider(),
        lifecycle_provider=lifecycle,
        config=RunnerConfig(),
        worker_id="worker-test",
    )
    return runner, queues, adapter, transport


def test_group_by_type_keeps_first_seen_order():
    tasks = [make_task("b"), make_task("a"), make_task("b")]

    groups = group_by_type(tasks)

    assert list(groups) == ["b", "a"]
    assert len(groups["b"]) == 2


@pytest.mark.asyncio
async def test_serial_executor_results_are_classified():
    runner, queues, _, _ = build_runner()
    queues.register("default", "ok", SucceedingExecutor(result="sent"))
    queues.register("default", "bad", FailingExecutor(error="nope"))
    queues.register("default", "quiet", SilentExecutor())

    result = await runner.run(
        "run-1",
        [make_task("ok", task_id="1"), make_task("bad", task_id="2"), make_task("quiet", task_id="3")],
    )

    assert [task.id for task in result.success_tasks] == ["1"]
    assert result.success_tasks[0].execution_result == "sent"
    assert [task.id for task in result.failed_tasks] == ["2"]
    assert result.failed_tasks[0].execution_stats["last_error"] == "nope"
    assert [task.id for task in result.ignored_tasks] == ["3"]
    assert result.async_tasks == []


@pytest.mark.asyncio
async def test_raising_executor_is_converted_to_failure():
    runner, queues, _, _ = build_runner()
    queues.register("default", "explode", RaisingExecutor())

    result = await runner.run("run-1", [make_task("explode", task_id="1")])

    assert [task.id for task in result.failed_tasks] == ["1"]
    assert "cannot handle explode" in result.failed_tasks[0].execution_stats["last_error"]


@pytest.mark.asyncio
async def test_unknown_task_type_is_ignored_with_generated_id():
    runner, _, _, _ = build_runner()

    result = await runner.run("run-1", [make_task("mystery")])

    assert len(result.ignored_tasks) == 1
    assert result.ignored_tasks[0].id is not None


@pytest.mark.asyncio
async def test_multiple_executor_exception_only_fails_pending_tasks():
    runner, queues, _, _ = build_runner()
    executor = BatchExecutor()
    queues.register("default", "bulk", executor)
    tasks = [make_task("bulk", task_id=str(index)) for index in range(3)]

    result = await runner.run("run-1", tasks)

    assert len(executor.calls) == 1
    assert [task.id for task in result.success_tasks] == ["0"]
    assert sorted(task.id for task in result.failed_tasks) == ["1", "2"]
    assert result.failed_tasks[0].execution_stats["last_error"] == "batch exploded"
    for task in tasks:
        assert await runner.lock_manager.is_locked(task.key) is False


@pytest.mark.asyncio
async def test_task_reporting_two_outcomes_keeps_the_first():
    runner, queues, _, _ = build_runner()
    queues.register("default", "twice", DoubleOutcomeExecutor())

    result = await runner.run("run-1", [make_task("twice", task_id="t1")])

    assert [task.id for task in result.success_tasks] == ["t1"]
    assert result.failed_tasks == []


@pytest.mark.asyncio
async def test_parallel_executor_is_bounded_by_chunk_size():
    runner, queues, _, _ = build_runner()
    executor = ParallelExecutor(chunk_size=2)
    queues.register("default", "fan", executor)

    result = await runner.run("run-1", [make_task("fan", task_id=str(index)) for index in range(5)])

    assert len(result.success_tasks) == 5
    assert executor.max_active == 2


@pytest.mark.asyncio
async def test_locked_tasks_are_skipped_and_locks_released_after_run():
    cache = InMemoryCacheProvider()
    runner, queues, _, _ = build_runner(cache=cache)
    queues.register("default", "ok", SucceedingExecutor())
    await runner.lock_manager.acquire("held")

    result = await runner.run("run-1", [make_task("ok", task_id="held"), make_task("ok", task_id="free")])

    assert [task.id for task in result.success_tasks] == ["free"]
    assert await runner.lock_manager.is_locked("free") is False
    assert await runner.lock_manager.is_locked("held") is True


@pytest.mark.asyncio
async def test_two_workers_never_run_the_same_task_concurrently():
    cache = InMemoryCacheProvider()
    first, first_queues, _, _ = build_runner(cache=cache)
    second, second_queues, _, _ = build_runner(cache=cache)
    executor = ParallelExecutor(chunk_size=1, delay=0.02)
    first_queues.register("default", "fan", executor)
    second_queues.register("default", "fan", executor)
    task = make_task("fan", task_id="shared")

    results = await asyncio.gather(first.run("run-a", [task]), second.run("run-b", [task.copy()]))

    assert sum(len(result.success_tasks) for result in results) == 1


@pytest.mark.asyncio
async def test_cancelled_run_returns_empty_result():
    runner, queues, _, _ = build_runner()
    executor = SucceedingExecutor()
    queues.register("default", "ok", executor)
    cancel = asyncio.Event()
    cancel.set()

    result = await runner.run("run-1", [make_task("ok", task_id="1")], cancel=cancel)

    assert result.success_tasks == []
    assert executor.seen == []


@pytest.mark.asyncio
async def test_slow_task_is_handed_off_and_finalized_asynchronously():
    runner, queues, adapter, transport = build_runner()
    follow_up = make_task("ok")
    executor = SlowExecutor(handoff_timeout_ms=5, follow_up=follow_up)
    queues.register("default", "slow", executor)
    queues.register("default", "ok", SucceedingExecutor())
    manager = AsyncTaskManager(max_tasks=5)
    slow_task = make_task("slow", task_id="slow-1")
    await adapter.upsert_tasks([slow_task])

    result = await runner.run("run-1", [slow_task], manager)

    assert result.success_tasks == [] and result.failed_tasks == []
    assert [item.task.id for item in result.async_tasks] == ["slow-1"]
    assert await runner.lock_manager.is_locked("slow-1") is False

    executor.release.set()
    await result.async_tasks[0].future

    assert adapter.get("slow-1").status is TaskStatus.EXECUTED
    assert transport.peek("default") == [follow_up]


@pytest.mark.asyncio
async def test_handoff_without_async_manager_is_a_configuration_error():
    runner, queues, _, _ = build_runner()
    executor = SlowExecutor(handoff_timeout_ms=5)
    queues.register("default", "slow", executor)

    with pytest.raises(ExecutorConfigurationError):
        await runner.run("run-1", [make_task("slow", task_id="slow-1")])

    assert await runner.lock_manager.is_locked("slow-1") is False
    await asyncio.sleep(0.01)
    assert executor.cancelled is True


@pytest.mark.asyncio
async def test_fast_task_with_async_config_stays_synchronous():
    runner, queues, _, _ = build_runner()
    executor = SlowExecutor(handoff_timeout_ms=1000)
    executor.release.set()
    queues.register("default", "slow", executor)

    result = await runner.run("run-1", [make_task("slow", task_id="1")], AsyncTaskManager())

    assert [task.id for task in result.success_tasks] == ["1"]
    assert result.async_tasks == []


@pytest.mark.asyncio
async def test_saturated_async_manager_reschedules_group():
    runner, queues, adapter, _ = build_runner()
    executor = SlowExecutor(handoff_timeout_ms=5)
    queues.register("default", "slow", executor)
    manager = AsyncTaskManager(max_tasks=1)
    blocker = asyncio.Event()
    manager.handoff_task(make_task("slow", task_id="busy"), blocker.wait())

    before = utcnow()
    result = await runner.run("run-1", [make_task("slow")], manager)

    assert result.failed_tasks == [] and result.async_tasks == []
    stored = adapter.tasks
    assert len(stored) == 1
    assert stored[0].status is TaskStatus.SCHEDULED
    assert stored[0].execute_at >= before + timedelta(seconds=179)
    blocker.set()
    await manager.shutdown(grace_seconds=1)


@pytest.mark.asyncio
async def test_lifecycle_events_report_start_and_outcome():
    lifecycle = RecordingLifecycleProvider()
    runner, queues, _, _ = build_runner(lifecycle=lifecycle)
    queues.register("default", "ok", SucceedingExecutor(result=7))
    queues.register("default", "bad", FailingExecutor(default_retries=2))

    await runner.run("run-1", [make_task("ok", task_id="1"), make_task("bad", task_id="2")])

    assert [record.subject.task_id for record in lifecycle.events("task_started")] == ["1", "2"]
    completed = lifecycle.events("task_completed")
    assert completed[0].details["result"] == 7
    failed = lifecycle.events("task_failed")
    assert failed[0].subject.task_id == "2"
    assert failed[0].details["will_retry"] is True
