from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

TASK_OUTCOMES_TOTAL = Counter(
    "taskq_task_outcomes_total",
    "Tasks classified by a run, grouped by queue and outcome (success/failed/ignored/async)",
    labelnames=("queue", "outcome"),
)

TASK_RETRIES_TOTAL = Counter(
    "taskq_task_retries_total",
    "Failed tasks rescheduled for another attempt, grouped by persistence path",
    labelnames=("queue", "path"),
)

TASKS_DISCARDED_TOTAL = Counter(
    "taskq_tasks_discarded_total",
    "Tasks dropped after exhausting retries without ever being persisted",
    labelnames=("queue",),
)

TASK_LOCK_SKIPPED_TOTAL = Counter(
    "taskq_task_lock_skipped_total",
    "Delivered tasks skipped because another worker holds their lock",
    labelnames=("queue",),
)

RUN_LATENCY_SECONDS = Histogram(
    "taskq_run_latency_seconds",
    "Wall-clock duration of one batch run, from lock acquisition to harvest",
    labelnames=("queue",),
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 300, float("inf")),
)

ASYNC_HANDOFF_TOTAL = Counter(
    "taskq_async_handoff_total",
    "Async handoff attempts grouped by outcome",
    labelnames=("outcome",),
)

ASYNC_TASKS_ACTIVE = Gauge(
    "taskq_async_tasks_active",
    "Handed-off tasks still running in the async task manager",
)

MATURE_TASKS_PROMOTED_TOTAL = Counter(
    "taskq_mature_tasks_promoted_total",
    "Scheduled tasks promoted from durable storage into the live queue",
)

MATURE_DUPLICATE_PICKS_TOTAL = Counter(
    "taskq_mature_duplicate_picks_total",
    "Mature tasks that a previous promotion tick had already picked",
)


def record_task_outcomes(*, queue: str, outcome: str, count: int) -> None:
    if count > 0:
        TASK_OUTCOMES_TOTAL.labels(queue=queue, outcome=outcome).inc(count)


def increment_task_retry(*, queue: str, path: str) -> None:
    TASK_RETRIES_TOTAL.labels(queue=queue, path=path).inc()


def increment_tasks_discarded(*, queue: str, count: int = 1) -> None:
    TASKS_DISCARDED_TOTAL.labels(queue=queue).inc(count)


def increment_lock_skipped(*, queue: str, count: int) -> None:
    if count > 0:
        TASK_LOCK_SKIPPED_TOTAL.labels(queue=queue).inc(count)


def observe_run_latency(*, queue: str, latency: float) -> None:
    RUN_LATENCY_SECONDS.labels(queue=queue).observe(max(0.0, latency))


def record_async_handoff(*, accepted: bool) -> None:
    ASYNC_HANDOFF_TOTAL.labels(outcome="accepted" if accepted else "rejected").inc()


def set_async_tasks_active(count: int) -> None:
    ASYNC_TASKS_ACTIVE.set(count)


def increment_mature_promoted(count: int) -> None:
    if count > 0:
        MATURE_TASKS_PROMOTED_TOTAL.inc(count)


def increment_duplicate_pick() -> None:
    MATURE_DUPLICATE_PICKS_TOTAL.inc()
