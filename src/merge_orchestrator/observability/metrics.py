"""
In-process metrics for orchestration runs.

Series are identified Prometheus-style as ``name{label=value,...}`` with labels
sorted by key, so two calls with the same labels in any order hit the same
series and snapshots are byte-stable. The registry is guarded by one lock and
is safe to share between the event loop and worker threads.
"""

from __future__ import annotations

import json
import math
import threading
from collections import defaultdict
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Mapping

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

ORCHESTRATIONS_TOTAL: Final[str] = "orchestrations_total"
MERGE_ATTEMPTS_TOTAL: Final[str] = "merge_attempts_total"
READINESS_EVALUATIONS_TOTAL: Final[str] = "readiness_evaluations_total"
ACTION_FAILURES_TOTAL: Final[str] = "post_merge_action_failures_total"
ORCHESTRATION_SECONDS: Final[str] = "orchestration_seconds"
ACTIVE_ORCHESTRATIONS: Final[str] = "active_orchestrations"

_MAX_NAME_LENGTH: Final[int] = 128


class _Summary:
    __slots__ = ("count", "total", "low", "high")

    def __init__(self) -> None:
        self.count = 0
        self.total = 0.0
        self.low = math.inf
        self.high = -math.inf

    def add(self, sample: float) -> None:
        self.count += 1
        self.total += sample
        self.low = min(self.low, sample)
        self.high = max(self.high, sample)

    def view(self) -> dict[str, JSONValue]:
        return {
            "count": self.count,
            "sum": self.total,
            "min": self.low,
            "max": self.high,
            "avg": self.total / self.count,
        }


class MetricsRegistry:
    """Counters, gauges and summary distributions keyed by series identifier."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: defaultdict[str, float] = defaultdict(float)
        self._gauges: dict[str, float] = {}
        self._summaries: defaultdict[str, _Summary] = defaultdict(_Summary)

    def inc(self, name: str, amount: float = 1.0, *, labels: Mapping[str, str] | None = None) -> None:
        step = _finite("amount", amount)
        if step < 0:
            raise ValueError("counter increment amount must be >= 0")
        series = series_id(name, labels)
        with self._lock:
            self._counters[series] += step

    def set_gauge(self, name: str, value: float, *, labels: Mapping[str, str] | None = None) -> None:
        series, level = series_id(name, labels), _finite("value", value)
        with self._lock:
            self._gauges[series] = level

    def add_gauge(self, name: str, delta: float, *, labels: Mapping[str, str] | None = None) -> None:
        series, change = series_id(name, labels), _finite("delta", delta)
        with self._lock:
            self._gauges[series] = self._gauges.get(series, 0.0) + change

    def observe(self, name: str, value: float, *, labels: Mapping[str, str] | None = None) -> None:
        series, sample = series_id(name, labels), _finite("value", value)
        with self._lock:
            self._summaries[series].add(sample)

    def get_counter(self, name: str, *, labels: Mapping[str, str] | None = None) -> float:
        series = series_id(name, labels)
        with self._lock:
            return self._counters.get(series, 0.0)

    def get_gauge(self, name: str, *, labels: Mapping[str, str] | None = None) -> float | None:
        series = series_id(name, labels)
        with self._lock:
            return self._gauges.get(series)

    def get_distribution(
        self, name: str, *, labels: Mapping[str, str] | None = None
    ) -> dict[str, JSONValue] | None:
        series = series_id(name, labels)
        with self._lock:
            summary = self._summaries.get(series)
            return None if summary is None else summary.view()

    def snapshot(self) -> dict[str, JSONValue]:
        with self._lock:
            return {
                "counters": dict(sorted(self._counters.items())),
                "gauges": dict(sorted(self._gauges.items())),
                "distributions": {
                    series: summary.view() for series, summary in sorted(self._summaries.items())
                },
            }

    def to_json(self) -> str:
        return json.dumps(self.snapshot(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def series_id(name: str, labels: Mapping[str, str] | None = None) -> str:
    """Canonical identifier: ``orchestrations_total{outcome=success}``."""

    if not isinstance(name, str):
        raise ValueError(f"metric name must be a string, got {type(name).__name__}")
    name = name.strip()
    if not name:
        raise ValueError("metric name must not be empty")
    if len(name) > _MAX_NAME_LENGTH:
        raise ValueError(f"metric name must be <= {_MAX_NAME_LENGTH} characters")
    if not labels:
        return name

    pairs: dict[str, str] = {}
    for key, value in labels.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise ValueError("metric labels must map strings to strings")
        if not key.strip() or not value.strip():
            raise ValueError(f"label {key!r} must have a non-empty key and value")
        pairs[key.strip()] = value.strip()
    rendered = ",".join(f"{key}={pairs[key]}" for key in sorted(pairs))
    return f"{name}{{{rendered}}}"


def _finite(field: str, value: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{field} must be numeric, got {type(value).__name__}")
    if not math.isfinite(value):
        raise ValueError(f"{field} must be finite")
    return float(value)


__all__ = [
    "ACTION_FAILURES_TOTAL",
    "ACTIVE_ORCHESTRATIONS",
    "MERGE_ATTEMPTS_TOTAL",
    "ORCHESTRATIONS_TOTAL",
    "ORCHESTRATION_SECONDS",
    "READINESS_EVALUATIONS_TOTAL",
    "MetricsRegistry",
    "series_id",
]
