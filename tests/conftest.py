"""
Shared pytest fixtures for the load generator test suite.

Provides a fake ticketing backend (a small Flask app whose behaviour each
test can tune) served over real HTTP from a background thread, plus a
fake clock for tests that must not wait on real timers.

Key Concepts Demonstrated:
- Live server fixture on an ephemeral port
- Configurable fake collaborator instead of a real backend
- Deterministic time via an injectable clock/sleep pair
"""

from __future__ import annotations

import threading
import time
from collections import Counter as CallCounter
from dataclasses import dataclass, field
from typing import Any, Callable, Generator

import pytest
from flask import Flask, jsonify, request
from werkzeug.serving import make_server

from ticketload.metrics import MetricsSink


# -----------------------------------------------------------------------------
# Fake clock
# -----------------------------------------------------------------------------


class FakeClock:
    """
    Monotonic clock that only moves when ``sleep`` is called.

    Hooks registered with ``on_advance`` run after every sleep, which lets
    a test complete fake sessions at simulated points in time.
    """

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []
        self._hooks: list[Callable[[float], None]] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        for hook in self._hooks:
            hook(self.now)

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def on_advance(self, hook: Callable[[float], None]) -> None:
        self._hooks.append(hook)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def metrics() -> MetricsSink:
    return MetricsSink()


# -----------------------------------------------------------------------------
# Fake ticketing backend
# -----------------------------------------------------------------------------


@dataclass
class BackendBehaviour:
    """
    Knobs controlling how the fake backend answers.

    Attributes:
        setup_status: Status code of ``POST /api/test/setup``.
        cleanup_status: Status code of ``DELETE /api/test/cleanup``.
        enter_status: Status code of ``POST /api/queue/enter``.
        queue_status: Callable ``(user_id, poll_number) -> status string``.
        token_success: Value of ``success`` in the token response.
        reject_taken_seats: Answer 409 when a seat is reserved twice.
        reserve_delay: Seconds the reservation endpoint sleeps.
    """

    setup_status: int = 200
    cleanup_status: int = 200
    enter_status: int = 200
    queue_status: Callable[[str, int], str] = lambda _user, _poll: "READY"
    token_success: bool = True
    reject_taken_seats: bool = False
    reserve_delay: float = 0.0
    event_id: int = 42

    calls: CallCounter = field(default_factory=CallCounter)
    polls_by_user: CallCounter = field(default_factory=CallCounter)
    user_ids: set = field(default_factory=set)
    missing_user_header: int = 0
    reserved_seats: set = field(default_factory=set)
    lock: threading.Lock = field(default_factory=threading.Lock)


def create_fake_backend(behaviour: BackendBehaviour) -> Flask:
    """Build a Flask app implementing the ticketing API contract."""
    app = Flask(__name__)

    def _track(name: str) -> str | None:
        user_id = request.headers.get("X-User-Id")
        with behaviour.lock:
            behaviour.calls[name] += 1
            if name not in ("setup", "cleanup"):
                if user_id:
                    behaviour.user_ids.add(user_id)
                else:
                    behaviour.missing_user_header += 1
        return user_id

    @app.post("/api/test/setup")
    def setup():
        _track("setup")
        if behaviour.setup_status != 200:
            return jsonify({"error": "setup failed"}), behaviour.setup_status
        seat_count = int(request.args.get("seatCount", "0"))
        seat_ids = list(range(1, seat_count + 1))
        return jsonify(
            {"eventId": behaviour.event_id, "seatCount": seat_count, "seatIds": seat_ids}
        )

    @app.delete("/api/test/cleanup")
    def cleanup():
        _track("cleanup")
        return jsonify({}), behaviour.cleanup_status

    @app.post("/api/queue/enter")
    def enter_queue():
        _track("enter")
        return jsonify({"eventId": request.args.get("eventId")}), behaviour.enter_status

    @app.get("/api/queue/status")
    def queue_status():
        user_id = _track("status") or ""
        with behaviour.lock:
            behaviour.polls_by_user[user_id] += 1
            poll_number = behaviour.polls_by_user[user_id]
        return jsonify({"status": behaviour.queue_status(user_id, poll_number)})

    @app.post("/api/queue/token")
    def acquire_token():
        _track("token")
        return jsonify({"success": behaviour.token_success, "token": "t"})

    @app.post("/api/reservations")
    def reserve():
        _track("reserve")
        if behaviour.reserve_delay:
            time.sleep(behaviour.reserve_delay)
        body: dict[str, Any] = request.get_json(silent=True) or {}
        seat_id = body.get("seatId")
        with behaviour.lock:
            if behaviour.reject_taken_seats and seat_id in behaviour.reserved_seats:
                return jsonify({"error": "seat already reserved"}), 409
            behaviour.reserved_seats.add(seat_id)
        return jsonify({"eventId": body.get("eventId"), "seatId": seat_id})

    return app


@pytest.fixture
def backend_behaviour() -> BackendBehaviour:
    return BackendBehaviour()


@pytest.fixture
def live_backend(backend_behaviour) -> Generator[str, None, None]:
    """
    Serve the fake backend on an ephemeral port in a background thread.

    Yields:
        str: Base URL of the running server.
    """
    app = create_fake_backend(backend_behaviour)
    server = make_server("127.0.0.1", 0, app, threaded=True)
    server_thread = threading.Thread(target=server.serve_forever, daemon=True)
    server_thread.start()

    yield f"http://127.0.0.1:{server.server_port}"

    server.shutdown()
    server_thread.join(timeout=5)
