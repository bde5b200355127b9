from __future__ import annotations

from taskq.queue.actions import (
    MAX_RESULT_SIZE_BYTES,
    Action,
    Actions,
    ActionType,
    TaskContext,
    classify_actions,
    enrich_with_error,
    enrich_with_result,
)
from tests.helpers.stubs import make_task


def test_forked_handle_records_success_into_task_context():
    actions = Actions("run-1")
    task = make_task(task_id="t-1")

    handle = actions.fork_for_task(task)
    handle.success(task, {"sent": 1})

    assert actions.get_task_result_status("t-1") == "success"
    assert actions.get_task_result("t-1") == {"sent": 1}

    results = actions.extract_sync_results()
    assert [item.id for item in results.success_tasks] == ["t-1"]
    assert results.success_tasks[0].execution_result == {"sent": 1}
    assert actions.pending_keys() == []


def test_unresolved_fork_is_harvested_as_ignored():
    actions = Actions("run-1")
    task = make_task(task_id="t-2")
    actions.fork_for_task(task)

    assert actions.get_task_result_status("t-2") == "pending"

    results = actions.extract_sync_results()
    assert [item.id for item in results.ignored_tasks] == ["t-2"]


def test_fail_records_error_and_stack():
    actions = Actions("run-1")
    task = make_task(task_id="t-3")

    try:
        raise ValueError("smtp down")
    except ValueError as exc:
        actions.fork_for_task(task).fail(task, exc, {"attempted_host": "mx1"})

    assert actions.get_task_result_status("t-3") == "fail"
    results = actions.extract_sync_results()
    stats = results.failed_tasks[0].execution_stats
    assert stats["last_error"] == "smtp down"
    assert "ValueError" in stats["last_error_stack"]
    assert stats["attempted_host"] == "mx1"


def test_root_add_tasks_lands_in_batch_context_and_is_harvested_once():
    actions = Actions("run-1")
    follow_up = make_task("digest")

    actions.add_tasks([follow_up])
    assert actions.batch_key in actions.pending_keys()

    first = actions.extract_sync_results()
    second = actions.extract_sync_results()
    assert first.new_tasks == [follow_up]
    assert first.ignored_tasks == []
    assert second.new_tasks == []


def test_extract_task_actions_consumes_context_exactly_once():
    actions = Actions("run-1")
    task = make_task(task_id="t-4")
    handle = actions.fork_for_task(task)
    handle.add_tasks([make_task("notify")])
    handle.success(task)

    first = actions.extract_task_actions("t-4")
    second = actions.extract_task_actions("t-4")

    assert len(first.success_tasks) == 1
    assert len(first.new_tasks) == 1
    assert second.success_tasks == [] and second.new_tasks == []


def test_extract_sync_results_skips_excluded_keys():
    actions = Actions("run-1")
    sync_task = make_task(task_id="sync")
    async_task = make_task(task_id="async")
    actions.fork_for_task(sync_task).success(sync_task)
    actions.fork_for_task(async_task)

    results = actions.extract_sync_results(["async"])

    assert [item.id for item in results.success_tasks] == ["sync"]
    assert actions.pending_keys() == ["async"]


def test_add_ignored_task_is_reported_as_ignored():
    actions = Actions("run-1")
    task = make_task("unknown", task_id="t-5")

    actions.add_ignored_task(task)

    assert actions.extract_sync_results().ignored_tasks == [task]


def test_oversized_or_unserializable_results_are_dropped():
    task = make_task(task_id="t-6")

    assert enrich_with_result(task, 42).execution_result == 42
    assert enrich_with_result(task, {"blob": "x" * MAX_RESULT_SIZE_BYTES}).execution_result is None
    assert enrich_with_result(task, {"bad": object()}).execution_result is None


def test_enrich_with_error_keeps_existing_stats():
    task = make_task(task_id="t-7", execution_stats={"retry_count": 2})

    enriched = enrich_with_error(task, "timeout", None)

    assert enriched.execution_stats == {"retry_count": 2, "last_error": "timeout"}
    assert task.execution_stats == {"retry_count": 2}


def test_second_outcome_for_a_task_is_dropped():
    actions = Actions("run-1")
    task = make_task(task_id="t-9")

    handle = actions.fork_for_task(task)
    handle.success(task, "sent")
    handle.fail(task, "late failure")
    actions.fail(task, "root failure")

    assert actions.get_task_result_status("t-9") == "success"
    results = actions.extract_sync_results()
    assert [item.id for item in results.success_tasks] == ["t-9"]
    assert results.failed_tasks == []


def test_classify_keeps_first_outcome_per_task():
    first = make_task(task_id="a")
    second = make_task(task_id="b")
    context = TaskContext(
        task=first,
        actions=[
            Action(type=ActionType.FAIL, timestamp=1.0, task=first, error="boom"),
            Action(type=ActionType.SUCCESS, timestamp=2.0, task=first),
            Action(type=ActionType.SUCCESS, timestamp=3.0, task=second),
        ],
    )

    results = classify_actions(context)

    assert [item.id for item in results.failed_tasks] == ["a"]
    assert [item.id for item in results.success_tasks] == ["b"]
