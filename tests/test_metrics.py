from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from taskq.core.metrics import (
    increment_lock_skipped,
    increment_task_retry,
    observe_run_latency,
    record_task_outcomes,
)


def test_record_task_outcomes_ignores_empty_counts():
    labels = {"queue": "metrics-test", "outcome": "success"}
    before = REGISTRY.get_sample_value("taskq_task_outcomes_total", labels) or 0.0

    record_task_outcomes(queue="metrics-test", outcome="success", count=3)
    record_task_outcomes(queue="metrics-test", outcome="success", count=0)

    after = REGISTRY.get_sample_value("taskq_task_outcomes_total", labels)
    assert after == pytest.approx(before + 3)


def test_observe_run_latency_records_by_queue():
    labels = {"queue": "metrics-test"}
    before = REGISTRY.get_sample_value("taskq_run_latency_seconds_sum", labels) or 0.0

    observe_run_latency(queue="metrics-test", latency=1.5)

    after = REGISTRY.get_sample_value("taskq_run_latency_seconds_sum", labels)
    assert after == pytest.approx(before + 1.5, rel=1e-6)


def test_retry_and_lock_counters_increment():
    retry_labels = {"queue": "metrics-test", "path": "upsert"}
    retry_before = REGISTRY.get_sample_value("taskq_task_retries_total", retry_labels) or 0.0
    lock_before = REGISTRY.get_sample_value("taskq_task_lock_skipped_total", {"queue": "metrics-test"}) or 0.0

    increment_task_retry(queue="metrics-test", path="upsert")
    increment_lock_skipped(queue="metrics-test", count=2)

    assert REGISTRY.get_sample_value("taskq_task_retries_total", retry_labels) == pytest.approx(retry_before + 1)
    assert REGISTRY.get_sample_value(
        "taskq_task_lock_skipped_total", {"queue": "metrics-test"}
    ) == pytest.approx(lock_before + 2)
