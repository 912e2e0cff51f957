"""
Per-user scenario state machine.

Each virtual user walks the same four steps a real fan would during a
flash sale::

    ENTERING -> WAITING (poll) -> TOKEN_PENDING -> RESERVING
             -> SUCCEEDED | FAILED | ABANDONED

A session runs sequentially on one worker thread and never shares
mutable state with other sessions; results leave the session only as
samples written into the :class:`~ticketload.metrics.MetricsSink`.

Key Concepts Demonstrated:
- Table-driven state machine: one handler per non-terminal state
- Transport errors and rejections treated identically
- Injectable clock, sleep and RNG so tests never wait on real timers
"""

from __future__ import annotations

import logging
import random
import threading
import time
import uuid
from concurrent.futures import Executor, Future
from typing import Callable

from ticketload.client import TicketingClient
from ticketload.metrics import (
    CHECKS,
    ITERATION_DURATION,
    ITERATIONS,
    Counter,
    Metric,
    MetricsSink,
    Rate,
    Trend,
)
from ticketload.models import EventFixture, SessionState, VirtualUserSession

logger = logging.getLogger(__name__)

# Custom metrics emitted by the scenario.
RESERVATION_SUCCESS = "reservation_success"
RESERVATION_FAIL = "reservation_fail"
RESERVATION_SUCCESS_RATE = "reservation_success_rate"
QUEUE_WAIT_TIME = "queue_wait_time"

SESSION_OUTCOME_COUNTERS = {
    SessionState.SUCCEEDED: "sessions_succeeded",
    SessionState.FAILED: "sessions_failed",
    SessionState.ABANDONED: "sessions_abandoned",
}

SCENARIO_METRICS: dict[str, type[Metric]] = {
    RESERVATION_SUCCESS: Counter,
    RESERVATION_FAIL: Counter,
    RESERVATION_SUCCESS_RATE: Rate,
    QUEUE_WAIT_TIME: Trend,
    **{name: Counter for name in SESSION_OUTCOME_COUNTERS.values()},
}

WAITING_STATUS = "WAITING"
ADMITTED_STATUSES = frozenset({"READY", "ENTERED"})

DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_MAX_POLL_ATTEMPTS = 30
DEFAULT_PACING = 0.1


def new_user_id() -> str:
    return str(uuid.uuid4())


class ScenarioExecutor:
    """
    Runs virtual user sessions against a shared fixture.

    Args:
        client: HTTP client for the ticketing API.
        fixture: Event and seat pool shared by every session.
        metrics: Run-wide sink receiving all samples.
        pool: Executor that ``spawn_session`` submits sessions to.
            Only needed when the scheduler drives this executor.
        poll_interval: Seconds between ``WAITING`` status polls.
        max_poll_attempts: ``WAITING`` answers tolerated before the
            session gives up.
        pacing: Pause after a session reaches a terminal state.
    """

    def __init__(
        self,
        client: TicketingClient,
        fixture: EventFixture,
        metrics: MetricsSink,
        *,
        pool: Executor | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_poll_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS,
        pacing: float = DEFAULT_PACING,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
        user_id_factory: Callable[[], str] = new_user_id,
    ):
        self.client = client
        self.fixture = fixture
        self.metrics = metrics
        self.pool = pool
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.pacing = pacing
        self._sleep = sleep
        self._clock = clock
        self._rng = rng if rng is not None else random.Random()
        self._rng_lock = threading.Lock()
        self._user_id_factory = user_id_factory

        self._finished: list[VirtualUserSession] = []
        self._finished_lock = threading.Lock()

        self._handlers: dict[SessionState, Callable[[VirtualUserSession], SessionState]] = {
            SessionState.ENTERING: self._enter_queue,
            SessionState.WAITING: self._poll_status,
            SessionState.TOKEN_PENDING: self._acquire_token,
            SessionState.RESERVING: self._reserve_seat,
        }

    @property
    def finished_sessions(self) -> list[VirtualUserSession]:
        with self._finished_lock:
            return list(self._finished)

    def spawn_session(self) -> Future:
        """Start one session on the worker pool and return its future."""
        if self.pool is None:
            raise RuntimeError("ScenarioExecutor has no worker pool to spawn sessions on")
        return self.pool.submit(self.run_session)

    def run_session(self) -> VirtualUserSession:
        """Drive one fresh session to a terminal state, blocking the calling thread."""
        session = VirtualUserSession(user_id=self._user_id_factory())
        started = self._clock()

        try:
            while not session.state.is_terminal:
                session.history.append(session.state)
                session.state = self._handlers[session.state](session)
        except Exception:
            logger.exception("Session %s crashed in state %s", session.user_id, session.state.value)
            session.state = SessionState.ABANDONED

        self.metrics.counter(SESSION_OUTCOME_COUNTERS[session.state]).add(1)
        logger.debug("Session %s finished: %s", session.user_id, session.state.value)

        self._sleep(self.pacing)

        self.metrics.counter(ITERATIONS).add(1)
        self.metrics.trend(ITERATION_DURATION).add((self._clock() - started) * 1000.0)
        with self._finished_lock:
            self._finished.append(session)
        return session

    # ------------------------------------------------------------------
    # State handlers
    # ------------------------------------------------------------------

    def _enter_queue(self, session: VirtualUserSession) -> SessionState:
        response = self.client.enter_queue(self.fixture.event_id, session.user_id)
        self._check("queue enter success", response.ok)
        if not response.ok:
            return SessionState.ABANDONED

        session.wait_started_at = self._clock()
        return SessionState.WAITING

    def _poll_status(self, session: VirtualUserSession) -> SessionState:
        response = self.client.queue_status(self.fixture.event_id, session.user_id)

        # An unanswered poll counts as "still waiting" and is retried.
        status = response.body.get("status") if response.ok else WAITING_STATUS

        if status in ADMITTED_STATUSES:
            waited_ms = (self._clock() - session.wait_started_at) * 1000.0
            self.metrics.trend(QUEUE_WAIT_TIME).add(waited_ms)
            return SessionState.TOKEN_PENDING

        if status != WAITING_STATUS:
            logger.debug("Session %s got unexpected queue status %r", session.user_id, status)
            return SessionState.ABANDONED

        self._sleep(self.poll_interval)
        session.poll_attempts += 1
        if session.poll_attempts >= self.max_poll_attempts:
            return SessionState.ABANDONED
        return SessionState.WAITING

    def _acquire_token(self, session: VirtualUserSession) -> SessionState:
        response = self.client.acquire_token(self.fixture.event_id, session.user_id)
        self._check("token acquired", response.ok)
        if not response.ok or response.body.get("success") is not True:
            return SessionState.ABANDONED
        return SessionState.RESERVING

    def _reserve_seat(self, session: VirtualUserSession) -> SessionState:
        with self._rng_lock:
            session.seat_id = self._rng.choice(self.fixture.seat_ids)

        response = self.client.reserve(self.fixture.event_id, session.seat_id, session.user_id)
        if response.ok:
            self.metrics.counter(RESERVATION_SUCCESS).add(1)
            self.metrics.rate(RESERVATION_SUCCESS_RATE).add(1)
            return SessionState.SUCCEEDED

        self.metrics.counter(RESERVATION_FAIL).add(1)
        self.metrics.rate(RESERVATION_SUCCESS_RATE).add(0)
        return SessionState.FAILED

    def _check(self, name: str, passed: bool) -> None:
        self.metrics.rate(CHECKS).add(passed)
        if not passed:
            logger.debug("Check failed: %s", name)
