"""Unit tests for the in-memory metrics registry."""

from __future__ import annotations

import json
import threading

import pytest

from merge_orchestrator.observability.metrics import (
    MERGE_ATTEMPTS_TOTAL,
    ORCHESTRATION_SECONDS,
    MetricsRegistry,
    series_id,
)


def test_counters_are_keyed_by_sorted_labels() -> None:
    registry = MetricsRegistry()

    registry.inc(MERGE_ATTEMPTS_TOTAL, labels={"strategy": "squash", "result": "success"})
    registry.inc(MERGE_ATTEMPTS_TOTAL, 2, labels={"result": "success", "strategy": "squash"})
    registry.inc(MERGE_ATTEMPTS_TOTAL, labels={"result": "failure", "strategy": "squash"})

    assert registry.get_counter(MERGE_ATTEMPTS_TOTAL, labels={"strategy": "squash", "result": "success"}) == 3.0
    assert registry.get_counter(MERGE_ATTEMPTS_TOTAL, labels={"result": "failure", "strategy": "squash"}) == 1.0
    assert registry.get_counter(MERGE_ATTEMPTS_TOTAL) == 0.0


def test_gauges_set_and_add() -> None:
    registry = MetricsRegistry()

    assert registry.get_gauge("active_orchestrations") is None
    registry.add_gauge("active_orchestrations", 1)
    registry.add_gauge("active_orchestrations", 1)
    registry.add_gauge("active_orchestrations", -1)
    assert registry.get_gauge("active_orchestrations") == 1.0

    registry.set_gauge("active_orchestrations", 0)
    assert registry.get_gauge("active_orchestrations") == 0.0


def test_distribution_summary() -> None:
    registry = MetricsRegistry()

    for value in (4.0, 1.0, 7.0):
        registry.observe(ORCHESTRATION_SECONDS, value, labels={"state": "done_success"})

    assert registry.get_distribution(ORCHESTRATION_SECONDS, labels={"state": "done_success"}) == {
        "count": 3,
        "sum": 12.0,
        "min": 1.0,
        "max": 7.0,
        "avg": 4.0,
    }
    assert registry.get_distribution(ORCHESTRATION_SECONDS) is None


@pytest.mark.parametrize(
    ("call", "fragment"),
    [
        (lambda r: r.inc("x", -1), "must be >= 0"),
        (lambda r: r.inc("x", float("nan")), "finite"),
        (lambda r: r.set_gauge("x", True), "numeric"),
        (lambda r: r.observe(" ", 1.0), "must not be empty"),
        (lambda r: r.inc("x", labels={"state": " "}), "non-empty key and value"),
        (lambda r: r.inc("x" * 129), "<= 128"),
    ],
)
def test_invalid_updates_are_rejected(call: object, fragment: str) -> None:
    registry = MetricsRegistry()

    with pytest.raises(ValueError, match=fragment):
        call(registry)  # type: ignore[operator]


def test_snapshot_is_deterministic() -> None:
    registry = MetricsRegistry()
    registry.inc("orchestrations_total", labels={"state": "done_failure"})
    registry.inc("orchestrations_total", labels={"state": "done_success"})
    registry.set_gauge("active_orchestrations", 0)
    registry.observe("orchestration_seconds", 2.5)

    snapshot = registry.snapshot()

    assert list(snapshot["counters"]) == [  # type: ignore[arg-type]
        "orchestrations_total{state=done_failure}",
        "orchestrations_total{state=done_success}",
    ]
    assert snapshot["gauges"] == {"active_orchestrations": 0.0}
    assert json.loads(registry.to_json()) == snapshot
    assert registry.to_json() == registry.to_json()


def test_concurrent_increments_are_not_lost() -> None:
    registry = MetricsRegistry()

    def _work() -> None:
        for _ in range(1_000):
            registry.inc("readiness_evaluations_total")

    threads = [threading.Thread(target=_work) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert registry.get_counter("readiness_evaluations_total") == 8_000.0


def test_series_id_sorts_and_trims_labels() -> None:
    assert series_id(" merge_attempts_total ") == "merge_attempts_total"
    assert (
        series_id("merge_attempts_total", {"strategy": "squash ", "result": "success"})
        == "merge_attempts_total{result=success,strategy=squash}"
    )
