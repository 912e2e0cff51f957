"""
HTTP client for the ticketing backend.

Wraps the six endpoints the load test touches behind a small class so
that the scenario state machine never deals with URLs, headers or
transport exceptions directly.

Every call returns an :class:`ApiResponse`.  Connection errors and
timeouts are folded into a response with ``status_code == 0`` so the
caller can treat "the network failed" and "the server said no" the
same way.

Key Concepts Demonstrated:
- One ``requests.Session`` shared across threads for connection pooling
- Per-request timeout so a hung backend cannot stall a session forever
- Built-in HTTP metrics recorded next to the call that produced them
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

import requests
from requests.adapters import HTTPAdapter

from ticketload.metrics import HTTP_REQ_DURATION, HTTP_REQ_FAILED, HTTP_REQS, MetricsSink

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"

SETUP_PATH = "/api/test/setup"
CLEANUP_PATH = "/api/test/cleanup"
QUEUE_ENTER_PATH = "/api/queue/enter"
QUEUE_STATUS_PATH = "/api/queue/status"
QUEUE_TOKEN_PATH = "/api/queue/token"
RESERVATIONS_PATH = "/api/reservations"

# Status code reported when no HTTP response was received at all.
TRANSPORT_ERROR_STATUS = 0


@dataclass(frozen=True)
class ApiResponse:
    """
    Outcome of one request against the ticketing API.

    Attributes:
        status_code: HTTP status, or ``0`` if the request never got a
            response (connection refused, timeout, ...).
        body: Parsed JSON object, or ``{}`` when the body was not a
            JSON object.
        duration_ms: Wall-clock time spent on the request.
        error: Transport error description when ``status_code == 0``.
    """

    status_code: int
    body: dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status_code == 200


def _safe_json(response: Any) -> dict[str, Any]:
    """Return response JSON as a dict, or ``{}`` if parsing fails."""
    try:
        data = response.json()
    except ValueError:
        return {}

    if isinstance(data, dict):
        return data
    return {}


def build_session(pool_size: int = 10) -> requests.Session:
    """
    Create a ``requests.Session`` whose connection pool fits *pool_size* threads.

    The default urllib3 pool keeps 10 connections per host, which would
    force most sessions of a 500-user run to reconnect on every request.
    """
    session = requests.Session()
    adapter = HTTPAdapter(pool_connections=1, pool_maxsize=max(pool_size, 1))
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class TicketingClient:
    """
    Thin wrapper around the ticketing backend's HTTP API.

    Args:
        base_url: Scheme and host of the backend, e.g.
            ``"http://localhost:8080"``.  May be empty when *session*
            already prefixes a host (Locust's ``HttpSession`` does).
        session: Any ``requests.Session``-compatible object.
        metrics: Sink receiving ``http_reqs``, ``http_req_duration`` and
            ``http_req_failed`` samples for scenario traffic.
        timeout: Seconds before a request is abandoned and reported as
            a transport error.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: requests.Session | None = None,
        metrics: MetricsSink | None = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session if session is not None else build_session()
        self.metrics = metrics
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Fixture lifecycle (not recorded as scenario traffic)
    # ------------------------------------------------------------------

    def setup_fixture(self, seat_count: int) -> ApiResponse:
        return self._request(
            "POST", SETUP_PATH, params={"seatCount": seat_count}, record=False
        )

    def cleanup(self) -> ApiResponse:
        return self._request("DELETE", CLEANUP_PATH, record=False)

    # ------------------------------------------------------------------
    # Scenario steps
    # ------------------------------------------------------------------

    def enter_queue(self, event_id: Any, user_id: str) -> ApiResponse:
        return self._request(
            "POST", QUEUE_ENTER_PATH, params={"eventId": event_id}, user_id=user_id
        )

    def queue_status(self, event_id: Any, user_id: str) -> ApiResponse:
        return self._request(
            "GET", QUEUE_STATUS_PATH, params={"eventId": event_id}, user_id=user_id
        )

    def acquire_token(self, event_id: Any, user_id: str) -> ApiResponse:
        return self._request(
            "POST", QUEUE_TOKEN_PATH, params={"eventId": event_id}, user_id=user_id
        )

    def reserve(self, event_id: Any, seat_id: Any, user_id: str) -> ApiResponse:
        return self._request(
            "POST",
            RESERVATIONS_PATH,
            json={"eventId": event_id, "seatId": seat_id},
            user_id=user_id,
        )

    def close(self) -> None:
        self.session.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        user_id: str | None = None,
        record: bool = True,
    ) -> ApiResponse:
        headers = {"Content-Type": "application/json"}
        if user_id is not None:
            headers[USER_ID_HEADER] = user_id

        started = time.perf_counter()
        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                json=json,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            duration_ms = (time.perf_counter() - started) * 1000.0
            logger.debug("%s %s failed after %.0fms: %s", method, path, duration_ms, exc)
            result = ApiResponse(
                status_code=TRANSPORT_ERROR_STATUS,
                duration_ms=duration_ms,
                error=str(exc) or type(exc).__name__,
            )
        else:
            duration_ms = (time.perf_counter() - started) * 1000.0
            result = ApiResponse(
                status_code=response.status_code,
                body=_safe_json(response),
                duration_ms=duration_ms,
            )

        if record and self.metrics is not None:
            self.metrics.counter(HTTP_REQS).add(1)
            self.metrics.trend(HTTP_REQ_DURATION).add(result.duration_ms)
            self.metrics.rate(HTTP_REQ_FAILED).add(not result.ok)
        return result
