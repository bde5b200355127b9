"""Outcome accumulation for one run.

Executors never return their outcome. They record it through an :class:`ExecutorActions`
handle, and the runner harvests the recorded log once the executor call settles. Each task
gets its own context, keyed by :attr:`Task.key`; follow-up work recorded through the root
accumulator lands in a run-wide batch context.
"""

from __future__ import annotations

import time
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Literal, Mapping, Protocol, Sequence

from ..core.logging import get_logger
from ..utils.json_encoding import json_size_bytes
from .models import ActionResults, Task

logger = get_logger(name=__name__)

MAX_RESULT_SIZE_BYTES = 256 * 1024

ResultStatus = Literal["success", "fail", "pending"]


class ActionType(str, Enum):
    SUCCESS = "success"
    FAIL = "fail"
    ADD_TASKS = "add_tasks"


TERMINAL_ACTIONS = (ActionType.SUCCESS, ActionType.FAIL)


@dataclass(slots=True)
class Action:
    type: ActionType
    timestamp: float
    task: Task | None = None
    new_tasks: list[Task] = field(default_factory=list)
    result: Any = None
    error: BaseException | str | None = None
    meta: Mapping[str, Any] | None = None


@dataclass(slots=True)
class TaskContext:
    task: Task | None
    actions: list[Action] = field(default_factory=list)


class ExecutorActions(Protocol):
    def success(self, task: Task, result: Any = None) -> None: ...

    def fail(
        self,
        task: Task,
        error: BaseException | str | None = None,
        meta: Mapping[str, Any] | None = None,
    ) -> None: ...

    def add_tasks(self, tasks: Iterable[Task]) -> None: ...


def enrich_with_result(task: Task, result: Any) -> Task:
    if result is None:
        return task
    if not isinstance(result, (bool, int, float)):
        size = json_size_bytes(result)
        if size is None or size > MAX_RESULT_SIZE_BYTES:
            return task
    return task.copy(execution_result=result)


def enrich_with_error(
    task: Task,
    error: BaseException | str | None,
    meta: Mapping[str, Any] | None,
) -> Task:
    if not error and not meta:
        return task
    stats = dict(task.execution_stats or {})
    if isinstance(error, BaseException):
        stats["last_error"] = str(error)
        stats["last_error_stack"] = "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )
    elif isinstance(error, str):
        stats["last_error"] = error
    if meta:
        stats.update(meta)
    return task.copy(execution_stats=stats)


def find_terminal_action(context: TaskContext, task_key: str) -> Action | None:
    for action in context.actions:
        if action.type in TERMINAL_ACTIONS and action.task is not None and action.task.key == task_key:
            return action
    return None


def classify_actions(context: TaskContext) -> ActionResults:
    """Reduce one context's action log into outcome buckets.

    A context bound to a task with nothing recorded is an ignored task. Only the first
    success or fail recorded for a task counts.
    """
    results = ActionResults()
    if not context.actions:
        if context.task is not None:
            results.ignored_tasks.append(context.task)
        return results
    settled: set[str] = set()
    for action in context.actions:
        if action.type in TERMINAL_ACTIONS and action.task is not None:
            if action.task.key in settled:
                continue
            settled.add(action.task.key)
        if action.type is ActionType.SUCCESS and action.task is not None:
            results.success_tasks.append(enrich_with_result(action.task, action.result))
        elif action.type is ActionType.FAIL and action.task is not None:
            results.failed_tasks.append(enrich_with_error(action.task, action.error, action.meta))
        elif action.type is ActionType.ADD_TASKS:
            results.new_tasks.extend(action.new_tasks)
    return results


def _outcome_already_recorded(context: TaskContext, task: Task, attempted: ActionType, runner_id: str) -> bool:
    recorded = find_terminal_action(context, task.key)
    if recorded is None:
        return False
    logger.error(
        "task_outcome_already_recorded",
        runner_id=runner_id,
        task_key=task.key,
        task_type=task.type,
        recorded=recorded.type.value,
        attempted=attempted.value,
    )
    return True


class TaskActions:
    """Handle bound to one task's context, handed to single-task executors."""

    def __init__(self, owner: "Actions", context: TaskContext, key: str) -> None:
        self._owner = owner
        self._context = context
        self._key = key

    def success(self, task: Task, result: Any = None) -> None:
        if _outcome_already_recorded(self._context, task, ActionType.SUCCESS, self._owner.runner_id):
            return
        self._context.actions.append(
            Action(type=ActionType.SUCCESS, timestamp=time.time(), task=task, result=result)
        )
        logger.info("task_succeeded", runner_id=self._owner.runner_id, task_key=task.key, task_type=task.type)

    def fail(
        self,
        task: Task,
        error: BaseException | str | None = None,
        meta: Mapping[str, Any] | None = None,
    ) -> None:
        if _outcome_already_recorded(self._context, task, ActionType.FAIL, self._owner.runner_id):
            return
        self._context.actions.append(
            Action(type=ActionType.FAIL, timestamp=time.time(), task=task, error=error, meta=meta)
        )
        logger.error(
            "task_failed",
            runner_id=self._owner.runner_id,
            task_key=task.key,
            task_type=task.type,
            error=str(error) if error else None,
        )

    def add_tasks(self, tasks: Iterable[Task]) -> None:
        new_tasks = list(tasks)
        self._context.actions.append(
            Action(type=ActionType.ADD_TASKS, timestamp=time.time(), new_tasks=new_tasks)
        )
        logger.info("task_added_new_tasks", runner_id=self._owner.runner_id, task_key=self._key, count=len(new_tasks))


class Actions:
    """Run-scoped outcome accumulator. Never shared across runs."""

    def __init__(self, runner_id: str) -> None:
        self.runner_id = runner_id
        self._contexts: dict[str, TaskContext] = {}

    @property
    def batch_key(self) -> str:
        return f"__batch_{self.runner_id}__"

    def fork_for_task(self, task: Task) -> TaskActions:
        key = task.key
        context = TaskContext(task=task)
        self._contexts[key] = context
        return TaskActions(self, context, key)

    def success(self, task: Task, result: Any = None) -> None:
        context = self._context_for(task)
        if _outcome_already_recorded(context, task, ActionType.SUCCESS, self.runner_id):
            return
        context.actions.append(Action(type=ActionType.SUCCESS, timestamp=time.time(), task=task, result=result))
        logger.info("task_succeeded", runner_id=self.runner_id, task_key=task.key, task_type=task.type)

    def fail(
        self,
        task: Task,
        error: BaseException | str | None = None,
        meta: Mapping[str, Any] | None = None,
    ) -> None:
        context = self._context_for(task)
        if _outcome_already_recorded(context, task, ActionType.FAIL, self.runner_id):
            return
        context.actions.append(
            Action(type=ActionType.FAIL, timestamp=time.time(), task=task, error=error, meta=meta)
        )
        logger.error(
            "task_failed",
            runner_id=self.runner_id,
            task_key=task.key,
            task_type=task.type,
            error=str(error) if error else None,
        )

    def add_tasks(self, tasks: Iterable[Task]) -> None:
        new_tasks = list(tasks)
        context = self._contexts.get(self.batch_key)
        if context is None:
            context = TaskContext(task=None)
            self._contexts[self.batch_key] = context
        context.actions.append(Action(type=ActionType.ADD_TASKS, timestamp=time.time(), new_tasks=new_tasks))
        logger.info("batch_added_new_tasks", runner_id=self.runner_id, count=len(new_tasks))

    def add_ignored_task(self, task: Task) -> None:
        self._contexts[task.key] = TaskContext(task=task)
        logger.warning("task_ignored", runner_id=self.runner_id, task_key=task.key, task_type=task.type)

    def get_task_result_status(self, key: str) -> ResultStatus:
        context = self._contexts.get(key)
        if context is None:
            return "pending"
        for action in context.actions:
            if action.type is ActionType.SUCCESS:
                return "success"
            if action.type is ActionType.FAIL:
                return "fail"
        return "pending"

    def get_task_result(self, key: str) -> Any:
        context = self._contexts.get(key)
        if context is None:
            return None
        for action in context.actions:
            if action.type is ActionType.SUCCESS and action.result is not None:
                return action.result
        return None

    def get_task_error(self, key: str) -> BaseException | str | None:
        context = self._contexts.get(key)
        if context is None:
            return None
        for action in context.actions:
            if action.type is ActionType.FAIL:
                return action.error
        return None

    def extract_task_actions(self, key: str) -> ActionResults:
        """Harvest and delete one task's context.

        Success or fail entries that target another task (root-level calls from a multi
        executor) also delete that task's context so it cannot be harvested twice.
        """
        context = self._contexts.pop(key, None)
        if context is None:
            return ActionResults()
        for action in context.actions:
            if action.type in (ActionType.SUCCESS, ActionType.FAIL) and action.task is not None:
                target = action.task.key
                if target != key:
                    self._contexts.pop(target, None)
        return classify_actions(context)

    def extract_sync_results(self, exclude_keys: Sequence[str] = ()) -> ActionResults:
        """Harvest and delete every context except ``exclude_keys``.

        The batch context only contributes its follow-up tasks.
        """
        excluded = set(exclude_keys)
        results = ActionResults()
        for key in list(self._contexts):
            if key in excluded:
                continue
            context = self._contexts.pop(key)
            if key == self.batch_key:
                for action in context.actions:
                    if action.type is ActionType.ADD_TASKS:
                        results.new_tasks.extend(action.new_tasks)
                continue
            results.extend(classify_actions(context))
        return results

    def pending_keys(self) -> list[str]:
        return list(self._contexts)

    def _context_for(self, task: Task) -> TaskContext:
        key = task.key
        context = self._contexts.get(key)
        if context is None:
            context = TaskContext(task=task)
            self._contexts[key] = context
        return context
