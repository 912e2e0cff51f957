"""
Ramping concurrency profile and the scheduler that realises it.

The profile is an ordered list of :class:`Stage` objects, each saying
"over *duration* seconds, move the number of concurrently active users
to *target*".  :func:`target_at` turns that list into a pure function of
elapsed time, which keeps the curve itself trivially unit-testable.

:class:`RampingScheduler` walks wall-clock time through the profile and
tops the live session count up to the curve at every control tick.  It
never cancels a running session: when the curve goes down the
scheduler simply stops admitting, and live sessions finish on their own.

Key Concepts Demonstrated:
- Pure time -> target function separated from the timing loop
- Admission-only control (no forced termination on ramp-down)
- Drain barrier before results are read
"""

from __future__ import annotations

import logging
import re
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from ticketload.exceptions import ConfigurationError
from ticketload.metrics import SPAWN_FAILURES, VUS, VUS_MAX, MetricsSink

logger = logging.getLogger(__name__)

DEFAULT_CONTROL_INTERVAL = 0.1

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str | float | int) -> float:
    """
    Convert ``"10s"``, ``"2m"``, ``"1m30s"`` or ``"500ms"`` to seconds.

    Bare numbers (or numeric strings) are taken as seconds.
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif not isinstance(value, str):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    else:
        text = value.strip().lower()
        try:
            seconds = float(text)
        except ValueError:
            parts = _DURATION_PART.findall(text)
            if not parts or "".join(num + unit for num, unit in parts) != text:
                raise ConfigurationError(f"Invalid duration: {value!r}") from None
            seconds = sum(float(num) * _UNIT_SECONDS[unit] for num, unit in parts)

    if seconds < 0:
        raise ConfigurationError(f"Duration must not be negative: {value!r}")
    return seconds


@dataclass(frozen=True)
class Stage:
    """One segment of the ramp profile."""

    duration: float
    target: int

    def __post_init__(self) -> None:
        if self.duration < 0:
            raise ConfigurationError(f"Stage duration must not be negative: {self.duration}")
        if self.target < 0:
            raise ConfigurationError(f"Stage target must not be negative: {self.target}")

    @classmethod
    def from_dict(cls, data: dict) -> "Stage":
        try:
            duration = parse_duration(data["duration"])
            target = int(data["target"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(
                f"Stage must define a duration and an integer target: {data!r}"
            ) from exc
        return cls(duration=duration, target=target)


def parse_stages(text: str) -> list[Stage]:
    """Parse ``"10s:500,50s:500,10s:0"`` into a list of stages."""
    stages = []
    for chunk in text.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        duration, sep, target = chunk.rpartition(":")
        if not sep:
            raise ConfigurationError(f"Stage must look like <duration>:<target>, got {chunk!r}")
        try:
            target_value = int(target)
        except ValueError as exc:
            raise ConfigurationError(f"Stage target must be an integer: {chunk!r}") from exc
        stages.append(Stage(duration=parse_duration(duration), target=target_value))

    if not stages:
        raise ConfigurationError("Ramp profile must contain at least one stage")
    return stages


def stage_labels(stages: Sequence[Stage], start_target: int = 0) -> list[str]:
    """Label each stage ``ramp-up``, ``hold`` or ``ramp-down`` relative to its predecessor."""
    labels = []
    previous = start_target
    for stage in stages:
        if stage.target > previous:
            labels.append("ramp-up")
        elif stage.target < previous:
            labels.append("ramp-down")
        else:
            labels.append("hold")
        previous = stage.target
    return labels


def total_duration(stages: Iterable[Stage]) -> float:
    return sum(stage.duration for stage in stages)


def peak_target(stages: Iterable[Stage], start_target: int = 0) -> int:
    return max([start_target, *(stage.target for stage in stages)])


def stage_index_at(stages: Sequence[Stage], elapsed: float) -> int | None:
    """Index of the stage active at *elapsed* seconds, or ``None`` once the profile is over."""
    stage_end = 0.0
    for index, stage in enumerate(stages):
        stage_end += stage.duration
        if elapsed < stage_end:
            return index
    return None


def target_at(stages: Sequence[Stage], elapsed: float, start_target: int = 0) -> int:
    """
    Target number of live sessions *elapsed* seconds into the run.

    Each stage interpolates linearly from the previous stage's target
    (or *start_target* for the first stage) to its own target.  The
    result is truncated to a whole number of users.  Zero-length stages
    jump straight to their target; after the final stage the curve
    stays at the last target.

    Args:
        stages: Ordered ramp profile.
        elapsed: Seconds since the run started.
        start_target: Concurrency at ``elapsed == 0``.

    Returns:
        The whole number of sessions that should be live.
    """
    if elapsed < 0:
        elapsed = 0.0

    previous = start_target
    stage_start = 0.0
    for stage in stages:
        stage_end = stage_start + stage.duration
        if elapsed < stage_end:
            progress = (elapsed - stage_start) / stage.duration
            return int(previous + (stage.target - previous) * progress)
        previous = stage.target
        stage_start = stage_end
    return previous


@dataclass(frozen=True)
class ScheduleReport:
    """What the scheduler actually did during a run."""

    spawned: int
    spawn_failures: int
    peak_live: int
    elapsed: float


class RampingScheduler:
    """
    Keeps the number of live sessions tracking the ramp profile.

    Args:
        start_target: Concurrency at the start of the first stage.
        control_interval: Seconds between two admission decisions.
        max_duration: Optional hard deadline for admission, in seconds.
            Sessions already live when it passes still drain normally.
        metrics: Optional sink for the ``vus``/``vus_max`` gauges and
            the ``spawn_failures`` counter.
    """

    def __init__(
        self,
        *,
        start_target: int = 0,
        control_interval: float = DEFAULT_CONTROL_INTERVAL,
        max_duration: float | None = None,
        metrics: MetricsSink | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if control_interval <= 0:
            raise ConfigurationError("control_interval must be positive")
        self.start_target = start_target
        self.control_interval = control_interval
        self.max_duration = max_duration
        self.metrics = metrics
        self._clock = clock
        self._sleep = sleep

    def run(
        self,
        stages: Sequence[Stage],
        spawn_session: Callable[[], Future],
    ) -> ScheduleReport:
        """
        Drive the profile to completion, then wait for every live session.

        Args:
            stages: Ordered ramp profile.
            spawn_session: Starts one session and returns a future that
                completes when the session ends.

        Returns:
            A :class:`ScheduleReport` describing admission activity.
        """
        if not stages:
            raise ConfigurationError("Ramp profile must contain at least one stage")

        labels = stage_labels(stages, self.start_target)
        deadline = total_duration(stages)
        if self.max_duration is not None:
            deadline = min(deadline, self.max_duration)

        live: set[Future] = set()
        spawned = 0
        spawn_failures = 0
        peak_live = 0
        current_stage: int | None = -1

        logger.info(
            "Starting ramp: %d stage(s), %.1fs, peak %d users",
            len(stages),
            deadline,
            peak_target(stages, self.start_target),
        )
        started = self._clock()

        while True:
            elapsed = self._clock() - started
            if elapsed >= deadline:
                break

            stage = stage_index_at(stages, elapsed)
            if stage != current_stage and stage is not None:
                logger.info(
                    "Stage %d/%d (%s): %.1fs towards %d users",
                    stage + 1,
                    len(stages),
                    labels[stage],
                    stages[stage].duration,
                    stages[stage].target,
                )
                current_stage = stage

            target = target_at(stages, elapsed, self.start_target)
            live = {handle for handle in live if not handle.done()}

            for _ in range(target - len(live)):
                try:
                    handle = spawn_session()
                except RuntimeError as exc:
                    spawn_failures += 1
                    logger.warning("Failed to spawn session: %s", exc)
                    if self.metrics is not None:
                        self.metrics.counter(SPAWN_FAILURES).add(1)
                    break
                live.add(handle)
                spawned += 1

            peak_live = max(peak_live, len(live))
            self._record_live(len(live))
            self._sleep(min(self.control_interval, max(deadline - elapsed, 0.0)))

        live = {handle for handle in live if not handle.done()}
        logger.info("Ramp finished; draining %d live session(s)", len(live))
        while live:
            self._record_live(len(live))
            self._sleep(self.control_interval)
            live = {handle for handle in live if not handle.done()}
        self._record_live(0)

        elapsed = self._clock() - started
        logger.info(
            "All sessions drained after %.1fs (%d spawned, %d spawn failures)",
            elapsed,
            spawned,
            spawn_failures,
        )
        return ScheduleReport(
            spawned=spawned,
            spawn_failures=spawn_failures,
            peak_live=peak_live,
            elapsed=elapsed,
        )

    def _record_live(self, count: int) -> None:
        if self.metrics is None:
            return
        self.metrics.gauge(VUS).set(count)
        self.metrics.gauge(VUS_MAX).set(max(count, self.metrics.gauge(VUS_MAX).value or 0))
