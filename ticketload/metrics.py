"""
Thread-safe metric primitives and the run-wide metrics sink.

Every virtual user session writes into the same :class:`MetricsSink`
from its own thread.  Each metric carries its own lock, held only for
an O(1) update, so writers of unrelated metrics never contend and no
writer blocks for longer than a single append.  Aggregates are read
once, after every session has drained.

Four kinds of metric are supported, mirroring the vocabulary used by
common load-testing tools:

- :class:`Counter`: monotonic sum of increments
- :class:`Rate`: fraction of non-zero samples
- :class:`Trend`: distribution of durations (milliseconds)
- :class:`Gauge`: last observed value plus its min/max
"""

from __future__ import annotations

import math
import threading
import time
from typing import Any, Callable

from ticketload.exceptions import MetricTypeError

# Built-in metric names recorded by the HTTP client and the scheduler.
HTTP_REQS = "http_reqs"
HTTP_REQ_DURATION = "http_req_duration"
HTTP_REQ_FAILED = "http_req_failed"
CHECKS = "checks"
VUS = "vus"
VUS_MAX = "vus_max"
SPAWN_FAILURES = "spawn_failures"
ITERATIONS = "iterations"
ITERATION_DURATION = "iteration_duration"


def percentile(sorted_values: list[float], pct: float) -> float:
    """
    Return the *pct* percentile of an already-sorted list.

    Uses linear interpolation between the two closest ranks, which
    gives stable results for small sample counts.
    """
    if not sorted_values:
        raise ValueError("percentile of an empty sample set")
    if len(sorted_values) == 1:
        return sorted_values[0]

    k = (len(sorted_values) - 1) * pct / 100.0
    lower = math.floor(k)
    upper = min(lower + 1, len(sorted_values) - 1)
    return sorted_values[lower] + (k - lower) * (sorted_values[upper] - sorted_values[lower])


class Metric:
    """Common base: a name, a kind and a private lock."""

    kind = "metric"
    aggregations: tuple[str, ...] = ()

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()

    @property
    def sample_count(self) -> int:
        raise NotImplementedError

    def aggregate(self, aggregation: str, *, elapsed: float | None = None) -> float | None:
        """Return one aggregate value, or ``None`` when there is nothing to report."""
        raise NotImplementedError

    def summary(self, *, elapsed: float | None = None) -> dict[str, Any]:
        return {agg: self.aggregate(agg, elapsed=elapsed) for agg in self.aggregations}

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r} samples={self.sample_count}>"


class Counter(Metric):
    kind = "counter"
    aggregations = ("count", "rate")

    def __init__(self, name: str):
        super().__init__(name)
        self._count = 0.0
        self._samples = 0

    def add(self, value: float = 1) -> None:
        if value < 0:
            raise ValueError("counters only accept non-negative increments")
        with self._lock:
            self._count += value
            self._samples += 1

    @property
    def count(self) -> float:
        return self._count

    @property
    def sample_count(self) -> int:
        return self._samples

    def aggregate(self, aggregation: str, *, elapsed: float | None = None) -> float | None:
        if aggregation == "count":
            return self._count
        if aggregation == "rate":
            # Per-second rate over the run window.
            if not elapsed:
                return None
            return self._count / elapsed
        raise KeyError(aggregation)


class Rate(Metric):
    kind = "rate"
    aggregations = ("rate", "passes", "fails")

    def __init__(self, name: str):
        super().__init__(name)
        self._passes = 0
        self._total = 0

    def add(self, sample: bool | int | float) -> None:
        with self._lock:
            self._total += 1
            if sample:
                self._passes += 1

    @property
    def passes(self) -> int:
        return self._passes

    @property
    def fails(self) -> int:
        return self._total - self._passes

    @property
    def rate(self) -> float | None:
        if self._total == 0:
            return None
        return self._passes / self._total

    @property
    def sample_count(self) -> int:
        return self._total

    def aggregate(self, aggregation: str, *, elapsed: float | None = None) -> float | None:
        if self._total == 0:
            return None
        if aggregation == "rate":
            return self.rate
        if aggregation == "passes":
            return float(self._passes)
        if aggregation == "fails":
            return float(self.fails)
        raise KeyError(aggregation)


class Trend(Metric):
    kind = "trend"
    aggregations = ("avg", "min", "med", "max", "p(90)", "p(95)", "count")

    def __init__(self, name: str):
        super().__init__(name)
        self._values: list[float] = []
        self._sum = 0.0
        self._min = math.inf
        self._max = -math.inf

    def add(self, value: float) -> None:
        with self._lock:
            self._values.append(value)
            self._sum += value
            if value < self._min:
                self._min = value
            if value > self._max:
                self._max = value

    @property
    def sample_count(self) -> int:
        return len(self._values)

    def percentile(self, pct: float) -> float | None:
        if not self._values:
            return None
        return percentile(sorted(self._values), pct)

    def aggregate(self, aggregation: str, *, elapsed: float | None = None) -> float | None:
        if aggregation == "count":
            return float(len(self._values))
        if not self._values:
            return None
        if aggregation == "avg":
            return self._sum / len(self._values)
        if aggregation == "min":
            return self._min
        if aggregation == "max":
            return self._max
        if aggregation == "med":
            return self.percentile(50)
        if aggregation.startswith("p(") and aggregation.endswith(")"):
            return self.percentile(float(aggregation[2:-1]))
        raise KeyError(aggregation)


class Gauge(Metric):
    kind = "gauge"
    aggregations = ("value", "min", "max")

    def __init__(self, name: str):
        super().__init__(name)
        self._value: float | None = None
        self._min = math.inf
        self._max = -math.inf
        self._samples = 0

    def set(self, value: float) -> None:
        with self._lock:
            self._value = value
            self._samples += 1
            if value < self._min:
                self._min = value
            if value > self._max:
                self._max = value

    @property
    def value(self) -> float | None:
        return self._value

    @property
    def sample_count(self) -> int:
        return self._samples

    def aggregate(self, aggregation: str, *, elapsed: float | None = None) -> float | None:
        if self._samples == 0:
            return None
        if aggregation == "value":
            return self._value
        if aggregation == "min":
            return self._min
        if aggregation == "max":
            return self._max
        raise KeyError(aggregation)


METRIC_KINDS: dict[str, type[Metric]] = {
    Counter.kind: Counter,
    Rate.kind: Rate,
    Trend.kind: Trend,
    Gauge.kind: Gauge,
}

BUILTIN_METRICS: dict[str, type[Metric]] = {
    HTTP_REQS: Counter,
    HTTP_REQ_DURATION: Trend,
    HTTP_REQ_FAILED: Rate,
    CHECKS: Rate,
    VUS: Gauge,
    VUS_MAX: Gauge,
    SPAWN_FAILURES: Counter,
    ITERATIONS: Counter,
    ITERATION_DURATION: Trend,
}


class MetricsSink:
    """
    Registry of named metrics shared by every session of a run.

    Metrics are created on first use.  The registry lock only guards
    creation; recording a sample takes the individual metric's lock.

    Attributes:
        started_at: Monotonic timestamp of the first ``start()`` call.
        stopped_at: Monotonic timestamp of ``stop()``, set after drain.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._metrics: dict[str, Metric] = {}
        self._registry_lock = threading.Lock()
        self.started_at: float | None = None
        self.stopped_at: float | None = None

    def start(self) -> None:
        if self.started_at is None:
            self.started_at = self._clock()

    def stop(self) -> None:
        self.stopped_at = self._clock()

    @property
    def elapsed(self) -> float | None:
        """Seconds between ``start()`` and ``stop()`` (or now, if still running)."""
        if self.started_at is None:
            return None
        end = self.stopped_at if self.stopped_at is not None else self._clock()
        return end - self.started_at

    def _get_or_create(self, name: str, metric_cls: type[Metric]) -> Metric:
        metric = self._metrics.get(name)
        if metric is None:
            with self._registry_lock:
                metric = self._metrics.get(name)
                if metric is None:
                    metric = metric_cls(name)
                    self._metrics[name] = metric
        if not isinstance(metric, metric_cls):
            raise MetricTypeError(
                f"Metric {name!r} is a {metric.kind}, not a {metric_cls.kind}"
            )
        return metric

    def counter(self, name: str) -> Counter:
        return self._get_or_create(name, Counter)  # type: ignore[return-value]

    def rate(self, name: str) -> Rate:
        return self._get_or_create(name, Rate)  # type: ignore[return-value]

    def trend(self, name: str) -> Trend:
        return self._get_or_create(name, Trend)  # type: ignore[return-value]

    def gauge(self, name: str) -> Gauge:
        return self._get_or_create(name, Gauge)  # type: ignore[return-value]

    def declare(self, name: str, kind: str) -> Metric:
        """Create-or-get a metric by kind name (``"counter"``, ``"rate"``, ...)."""
        try:
            metric_cls = METRIC_KINDS[kind]
        except KeyError as exc:
            raise MetricTypeError(f"Unknown metric kind: {kind}") from exc
        return self._get_or_create(name, metric_cls)

    def get(self, name: str) -> Metric | None:
        return self._metrics.get(name)

    def names(self) -> list[str]:
        return sorted(self._metrics)

    def total_samples(self) -> int:
        return sum(metric.sample_count for metric in self._metrics.values())

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Return every metric's summary aggregates keyed by metric name."""
        elapsed = self.elapsed
        return {
            name: {"kind": metric.kind, **metric.summary(elapsed=elapsed)}
            for name, metric in sorted(self._metrics.items())
        }

    def __contains__(self, name: str) -> bool:
        return name in self._metrics
