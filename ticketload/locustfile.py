"""
Locust entrypoint for the flash-sale scenario.

Runs the same per-user state machine as the threaded engine, but lets
the ``locust`` CLI drive concurrency, so the web UI, distributed
workers and Locust's own CSV stats are available too.

Usage examples::

    # Headless run with the ramp profile from the environment:
    locust -f ticketload/locustfile.py --headless --host http://localhost:8080

    # Same run with a YAML profile:
    LOADGEN_PROFILE=profile.yml locust -f ticketload/locustfile.py --headless ...

Unlike the threaded engine, Locust stops surplus users itself when the
shape ramps down, so in-flight sessions may be interrupted there.

Key Concepts Demonstrated:
- ``LoadTestShape`` backed by the same pure ramp function
- Fixture setup/teardown bound to Locust's ``test_start``/``test_stop``
- Threshold verdict mapped onto Locust's process exit code
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from locust import HttpUser, LoadTestShape, constant, events, task
from locust.exception import StopUser

from ticketload.client import TicketingClient
from ticketload.config import RunConfig, load_run_config
from ticketload.coordinator import RunCoordinator
from ticketload.exceptions import SetupError
from ticketload.metrics import MetricsSink
from ticketload.scenario import ScenarioExecutor
from ticketload.scheduler import target_at, total_duration
from ticketload.thresholds import EXIT_RUN_ABORTED, print_summary

logger = logging.getLogger(__name__)

_profile = os.environ.get("LOADGEN_PROFILE")
RUN_CONFIG: RunConfig = load_run_config(profile=Path(_profile) if _profile else None)
METRICS = MetricsSink()


class _RunState:
    """Module-level holder for the coordinator shared by all Locust users."""

    coordinator: RunCoordinator | None = None


@events.test_start.add_listener
def _provision_fixture(environment, **_kwargs):
    """Create the shared fixture before the first user starts."""
    overrides = {"base_url": environment.host} if environment.host else None
    run_config = load_run_config(profile=Path(_profile) if _profile else None, overrides=overrides)
    coordinator = RunCoordinator(run_config, metrics=METRICS)
    try:
        coordinator.setup()
    except SetupError as exc:
        logger.error("Run aborted: %s", exc)
        environment.process_exit_code = EXIT_RUN_ABORTED
        if environment.runner is not None:
            environment.runner.quit()
        return
    _RunState.coordinator = coordinator
    METRICS.start()


@events.test_stop.add_listener
def _release_fixture(environment, **_kwargs):
    coordinator = _RunState.coordinator
    if coordinator is None or coordinator.fixture is None:
        return
    METRICS.stop()
    coordinator.teardown()


@events.quitting.add_listener
def _apply_thresholds(environment, **_kwargs):
    """Evaluate thresholds once Locust is shutting down and set the exit code."""
    coordinator = _RunState.coordinator
    if coordinator is None:
        return
    verdict = coordinator.evaluate()
    print_summary(verdict)
    environment.process_exit_code = verdict.exit_code
    coordinator.close()


class TicketingUser(HttpUser):
    """
    One simulated fan per scenario iteration.

    Each iteration runs a brand-new session (fresh ``X-User-Id``); the
    scenario's own pacing pause replaces Locust's ``wait_time``.
    """

    wait_time = constant(0)

    executor: ScenarioExecutor

    def on_start(self) -> None:
        coordinator = _RunState.coordinator
        if coordinator is None or coordinator.fixture is None:
            raise StopUser("No fixture available")

        client = TicketingClient(
            "",
            session=self.client,
            metrics=METRICS,
            timeout=RUN_CONFIG.request_timeout,
        )
        self.executor = ScenarioExecutor(
            client,
            coordinator.fixture,
            METRICS,
            poll_interval=RUN_CONFIG.poll_interval,
            max_poll_attempts=RUN_CONFIG.max_poll_attempts,
            pacing=RUN_CONFIG.pacing,
        )

    @task
    def reserve_seat(self) -> None:
        self.executor.run_session()


class RampShape(LoadTestShape):
    """Follows the configured ramp profile, then stops the test."""

    stages = RUN_CONFIG.stages
    start_target = RUN_CONFIG.start_target

    def tick(self):
        run_time = self.get_run_time()
        if run_time >= total_duration(self.stages):
            return None

        target = target_at(self.stages, run_time, self.start_target)
        # Spawn as fast as the curve asks for; Locust caps at the target.
        return target, max(target, 1)
