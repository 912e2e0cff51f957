"""
Fixtures for unit tests: a scripted stand-in for the HTTP client.
"""

from __future__ import annotations

import random
from typing import Any, Callable

import pytest

from ticketload.client import ApiResponse
from ticketload.models import EventFixture
from ticketload.scenario import ScenarioExecutor


def ok(body: dict[str, Any] | None = None) -> ApiResponse:
    return ApiResponse(status_code=200, body=body or {}, duration_ms=5.0)


class StubTicketingClient:
    """
    Minimal stand-in for :class:`~ticketload.client.TicketingClient`.

    Each step returns a scripted :class:`ApiResponse`.  Status polls are
    consumed in order and the last one repeats forever.  Every call is
    recorded as ``(step, user_id, extra)`` for later assertions.
    """

    def __init__(
        self,
        *,
        enter: ApiResponse | None = None,
        statuses: list[ApiResponse] | None = None,
        token: ApiResponse | None = None,
        reserve: ApiResponse | None = None,
    ):
        self.enter_response = enter or ok()
        self.status_responses = list(statuses or [ok({"status": "READY"})])
        self.token_response = token or ok({"success": True})
        self.reserve_response = reserve or ok()
        self.calls: list[tuple[str, str, Any]] = []
        self.on_status: Callable[[], None] | None = None

    def enter_queue(self, event_id, user_id):
        self.calls.append(("enter", user_id, event_id))
        return self.enter_response

    def queue_status(self, event_id, user_id):
        self.calls.append(("status", user_id, event_id))
        if self.on_status is not None:
            self.on_status()
        if len(self.status_responses) > 1:
            return self.status_responses.pop(0)
        return self.status_responses[0]

    def acquire_token(self, event_id, user_id):
        self.calls.append(("token", user_id, event_id))
        return self.token_response

    def reserve(self, event_id, seat_id, user_id):
        self.calls.append(("reserve", user_id, (event_id, seat_id)))
        return self.reserve_response

    def steps(self) -> list[str]:
        return [step for step, _user, _extra in self.calls]


@pytest.fixture
def event_fixture() -> EventFixture:
    return EventFixture(event_id=7, seat_ids=tuple(range(1, 11)))


@pytest.fixture
def stub_client() -> StubTicketingClient:
    return StubTicketingClient()


@pytest.fixture
def make_executor(event_fixture, metrics, fake_clock):
    """
    Factory for a :class:`ScenarioExecutor` wired to a stub client and fake clock.

    Example:
        def test_something(make_executor, stub_client):
            executor = make_executor(stub_client)
            session = executor.run_session()
    """

    def _make(client, **kwargs) -> ScenarioExecutor:
        kwargs.setdefault("sleep", fake_clock.sleep)
        kwargs.setdefault("clock", fake_clock)
        kwargs.setdefault("rng", random.Random(1234))
        return ScenarioExecutor(client, event_fixture, metrics, **kwargs)

    return _make
