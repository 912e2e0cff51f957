"""
Run lifecycle: setup -> ramped execution -> drain -> teardown -> verdict.

:class:`RunCoordinator` owns the shared fixture for the whole run.  A
failed setup is fatal and aborts before any virtual user exists; a
failed teardown is logged and otherwise ignored.  The verdict is
computed from the metrics sink only after every session has drained.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from ticketload.client import TicketingClient, build_session
from ticketload.config import RunConfig
from ticketload.exceptions import SetupError
from ticketload.metrics import BUILTIN_METRICS, MetricsSink
from ticketload.models import EventFixture
from ticketload.scenario import SCENARIO_METRICS, ScenarioExecutor
from ticketload.scheduler import RampingScheduler, ScheduleReport, peak_target
from ticketload.thresholds import Verdict, evaluate, validate

logger = logging.getLogger(__name__)

KNOWN_METRICS = {**BUILTIN_METRICS, **SCENARIO_METRICS}


@dataclass(frozen=True)
class RunResult:
    fixture: EventFixture
    schedule: ScheduleReport
    verdict: Verdict

    @property
    def passed(self) -> bool:
        return self.verdict.passed


def fixture_from_payload(payload: dict) -> EventFixture:
    """Build an :class:`EventFixture` from the setup endpoint's JSON body."""
    event_id = payload.get("eventId")
    seat_ids = payload.get("seatIds")
    if event_id is None:
        raise SetupError("Setup response is missing eventId")
    if not isinstance(seat_ids, list) or not seat_ids:
        raise SetupError("Setup response contains no seatIds")
    return EventFixture(event_id=event_id, seat_ids=tuple(seat_ids))


class RunCoordinator:
    """
    Orchestrates one complete load-test run.

    Args:
        config: Immutable run configuration.
        client: Optional pre-built client (tests inject one); by default
            a client with a connection pool sized to the peak target is
            created.
        metrics: Optional sink; a fresh one is created by default.
    """

    def __init__(
        self,
        config: RunConfig,
        *,
        client: TicketingClient | None = None,
        metrics: MetricsSink | None = None,
    ):
        self.config = config
        self.metrics = metrics if metrics is not None else MetricsSink()
        self.peak = max(peak_target(config.stages, config.start_target), 1)
        self.client = client if client is not None else TicketingClient(
            config.base_url,
            session=build_session(self.peak),
            metrics=self.metrics,
            timeout=config.request_timeout,
        )
        self.fixture: EventFixture | None = None

        # Reject bad thresholds before any request is sent.
        validate(config.thresholds, KNOWN_METRICS)
        # Thresholded counters must exist even if nothing ever increments them.
        for threshold in config.thresholds:
            self.metrics.declare(threshold.metric, KNOWN_METRICS[threshold.metric].kind)

    def setup(self) -> EventFixture:
        """
        Provision the shared fixture.

        Raises:
            SetupError: If the backend does not return a usable fixture.
        """
        logger.info("Provisioning fixture with %d seats", self.config.seat_count)
        response = self.client.setup_fixture(self.config.seat_count)
        if not response.ok:
            detail = response.error or response.body or "no body"
            logger.error("Setup failed with status %s: %s", response.status_code, detail)
            raise SetupError(
                f"Setup failed with status {response.status_code}",
                status_code=response.status_code,
            )

        self.fixture = fixture_from_payload(response.body)
        logger.info(
            "Setup complete: eventId=%s, seats=%d",
            self.fixture.event_id,
            self.fixture.seat_count,
        )
        return self.fixture

    def execute(self, fixture: EventFixture) -> ScheduleReport:
        """Run the ramp profile with one scenario session per admitted user."""
        scheduler = RampingScheduler(
            start_target=self.config.start_target,
            control_interval=self.config.control_interval,
            max_duration=self.config.max_duration,
            metrics=self.metrics,
        )
        with ThreadPoolExecutor(max_workers=self.peak, thread_name_prefix="vu") as pool:
            executor = ScenarioExecutor(
                self.client,
                fixture,
                self.metrics,
                pool=pool,
                poll_interval=self.config.poll_interval,
                max_poll_attempts=self.config.max_poll_attempts,
                pacing=self.config.pacing,
            )
            self.metrics.start()
            try:
                return scheduler.run(self.config.stages, executor.spawn_session)
            finally:
                self.metrics.stop()

    def teardown(self) -> bool:
        """Release the fixture.  Best effort: never raises, returns success."""
        response = self.client.cleanup()
        if response.ok:
            logger.info("Cleanup: success")
            return True
        logger.warning(
            "Cleanup failed with status %s%s",
            response.status_code,
            f" ({response.error})" if response.error else "",
        )
        return False

    def evaluate(self) -> Verdict:
        return evaluate(self.config.thresholds, self.metrics)

    def run(self) -> RunResult:
        """
        Execute the full lifecycle and return the result.

        Raises:
            SetupError: If the fixture could not be provisioned.  No
                session is spawned and no metric sample is recorded.
        """
        fixture = self.setup()
        try:
            schedule = self.execute(fixture)
        finally:
            self.teardown()

        verdict = self.evaluate()
        logger.info("Run finished: %s", "PASS" if verdict.passed else "FAIL")
        return RunResult(fixture=fixture, schedule=schedule, verdict=verdict)

    def close(self) -> None:
        self.client.close()
