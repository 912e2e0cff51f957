"""
Pass/fail thresholds evaluated against the final metric aggregates.

A threshold pairs a metric name with an expression such as
``p(95)<5000`` or ``rate>0.001``.  Expressions are parsed up front so a
typo fails the run before any traffic is generated, and evaluated once
after every session has drained.

Exit codes follow a three-state convention so that CI can distinguish
"thresholds breached" from "the run never happened":

- ``0``: all thresholds passed
- ``1``: at least one threshold was breached
- ``2``: the run was aborted (fixture setup failed, bad configuration)
"""

from __future__ import annotations

import operator
import re
import sys
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, TextIO

from ticketload.exceptions import ThresholdError
from ticketload.metrics import METRIC_KINDS, Metric, MetricsSink, Trend

EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_RUN_ABORTED = 2

_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<=": operator.le,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    ">": operator.gt,
}

_EXPRESSION = re.compile(
    r"^\s*(?P<agg>count|rate|value|passes|fails|avg|min|max|med|p\(\s*\d+(?:\.\d+)?\s*\))"
    r"\s*(?P<op><=|>=|==|!=|<|>)"
    r"\s*(?P<bound>-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)\s*$"
)

# Aggregations each metric kind can answer; p(N) is handled separately.
SUPPORTED_AGGREGATIONS: dict[type[Metric], frozenset[str]] = {
    metric_cls: frozenset(agg for agg in metric_cls.aggregations if not agg.startswith("p("))
    for metric_cls in METRIC_KINDS.values()
}


@dataclass(frozen=True)
class Threshold:
    """One parsed ``<aggregation> <op> <bound>`` expression on a metric."""

    metric: str
    expression: str
    aggregation: str
    op: str
    bound: float

    @classmethod
    def parse(cls, metric: str, expression: str) -> "Threshold":
        match = _EXPRESSION.match(expression)
        if match is None:
            raise ThresholdError(f"Cannot parse threshold for {metric}: {expression!r}")

        aggregation = re.sub(r"\s+", "", match.group("agg"))
        if aggregation.startswith("p("):
            pct = float(aggregation[2:-1])
            if not 0 <= pct <= 100:
                raise ThresholdError(f"Percentile out of range in {expression!r}")
            aggregation = f"p({aggregation[2:-1]})"

        return cls(
            metric=metric,
            expression=expression.strip(),
            aggregation=aggregation,
            op=match.group("op"),
            bound=float(match.group("bound")),
        )

    def supports(self, metric: Metric) -> bool:
        if self.aggregation.startswith("p("):
            return isinstance(metric, Trend)
        allowed = SUPPORTED_AGGREGATIONS.get(type(metric), frozenset())
        return self.aggregation in allowed

    def compare(self, observed: float) -> bool:
        return _OPERATORS[self.op](observed, self.bound)


@dataclass(frozen=True)
class ThresholdResult:
    threshold: Threshold
    observed: float | None
    passed: bool
    reason: str | None = None

    @property
    def metric(self) -> str:
        return self.threshold.metric

    @property
    def expression(self) -> str:
        return self.threshold.expression


@dataclass(frozen=True)
class Verdict:
    """Per-threshold results plus the overall pass/fail decision."""

    results: tuple[ThresholdResult, ...]

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.results)

    @property
    def failures(self) -> list[ThresholdResult]:
        return [result for result in self.results if not result.passed]

    @property
    def exit_code(self) -> int:
        return EXIT_PASS if self.passed else EXIT_THRESHOLD_BREACH


def parse_thresholds(mapping: Mapping[str, str | Iterable[str]]) -> tuple[Threshold, ...]:
    """
    Parse a ``{metric: expression | [expressions]}`` mapping.

    Raises:
        ThresholdError: If any expression is malformed.
    """
    thresholds = []
    for metric, expressions in mapping.items():
        if isinstance(expressions, str):
            expressions = [expressions]
        for expression in expressions:
            if not isinstance(expression, str):
                raise ThresholdError(f"Threshold for {metric} must be a string: {expression!r}")
            thresholds.append(Threshold.parse(metric, expression))
    return tuple(thresholds)


def parse_threshold_string(text: str) -> dict[str, list[str]]:
    """
    Parse the ``THRESHOLDS`` environment format.

    Entries are separated by ``;`` and look like ``metric=expression``,
    e.g. ``"http_req_duration=p(95)<5000;reservation_success_rate=rate>0.001"``.
    """
    parsed: dict[str, list[str]] = {}
    for entry in text.split(";"):
        entry = entry.strip()
        if not entry:
            continue
        metric, sep, expression = entry.partition("=")
        if not sep or not metric.strip() or not expression.strip():
            raise ThresholdError(f"Threshold must look like <metric>=<expression>, got {entry!r}")
        parsed.setdefault(metric.strip(), []).append(expression.strip())
    return parsed


def validate(thresholds: Iterable[Threshold], known: Mapping[str, type[Metric]]) -> None:
    """
    Reject thresholds on unknown metrics or unsupported aggregations.

    Args:
        thresholds: Parsed thresholds.
        known: Metric name -> metric class for every metric the run emits.

    Raises:
        ThresholdError: On the first invalid threshold.
    """
    for threshold in thresholds:
        metric_cls = known.get(threshold.metric)
        if metric_cls is None:
            raise ThresholdError(f"Threshold refers to unknown metric: {threshold.metric}")
        if not threshold.supports(metric_cls(threshold.metric)):
            raise ThresholdError(
                f"{threshold.aggregation} is not available on "
                f"{metric_cls.kind} metric {threshold.metric}"
            )


def evaluate(thresholds: Iterable[Threshold], metrics: MetricsSink) -> Verdict:
    """
    Compare every threshold against the sink's final aggregates.

    Counts are always defined, so a declared counter that was never
    incremented is evaluated at ``0``.  Any other aggregate of a metric
    without samples fails: there is no evidence that the bound was met.
    """
    elapsed = metrics.elapsed
    results = []
    for threshold in thresholds:
        metric = metrics.get(threshold.metric)
        if metric is None:
            results.append(ThresholdResult(threshold, None, False, "no samples"))
            continue
        if not threshold.supports(metric):
            raise ThresholdError(
                f"{threshold.aggregation} is not available on {metric.kind} metric {metric.name}"
            )

        observed = metric.aggregate(threshold.aggregation, elapsed=elapsed)
        if observed is None:
            results.append(ThresholdResult(threshold, None, False, "no samples"))
            continue
        results.append(ThresholdResult(threshold, observed, threshold.compare(observed)))
    return Verdict(results=tuple(results))


def print_summary(verdict: Verdict, stream: TextIO | None = None) -> None:
    """Print a human-readable results table for CI logs."""
    out = stream if stream is not None else sys.stdout
    width = 78
    print("Threshold Check", file=out)
    print("-" * width, file=out)
    print(f"{'Metric':<30}{'Threshold':<18}{'Actual':>16}{'Status':>14}", file=out)
    print("-" * width, file=out)
    for result in verdict.results:
        actual = "n/a" if result.observed is None else f"{result.observed:.4f}"
        status = "PASS" if result.passed else "FAIL"
        print(
            f"{result.metric:<30}{result.expression:<18}{actual:>16}{status:>14}",
            file=out,
        )
    print("-" * width, file=out)
    print(f"Overall: {'PASS' if verdict.passed else 'FAIL'}", file=out)
