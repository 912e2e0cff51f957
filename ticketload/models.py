"""
Domain objects shared by the scenario, scheduler and coordinator.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class SessionState(str, enum.Enum):
    """Lifecycle states of one virtual user session."""

    ENTERING = "entering"
    WAITING = "waiting"
    TOKEN_PENDING = "token_pending"
    RESERVING = "reserving"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {SessionState.SUCCEEDED, SessionState.FAILED, SessionState.ABANDONED}
)


@dataclass(frozen=True)
class EventFixture:
    """
    Test data provisioned by the backend's setup endpoint.

    Shared read-only by every session for the lifetime of the run.
    """

    event_id: Any
    seat_ids: tuple[Any, ...]

    def __post_init__(self) -> None:
        if not self.seat_ids:
            raise ValueError("fixture must contain at least one seat")

    @property
    def seat_count(self) -> int:
        return len(self.seat_ids)


@dataclass
class VirtualUserSession:
    """
    Mutable per-session state, owned by exactly one worker thread.

    Attributes:
        user_id: Unique identifier sent as the ``X-User-Id`` header.
        state: Current position in the scenario state machine.
        wait_started_at: Monotonic time at which queue polling began.
        poll_attempts: Number of status polls answered with ``WAITING``.
        seat_id: Seat chosen in the reservation step, if reached.
        history: Non-terminal states visited, in order.
    """

    user_id: str
    state: SessionState = SessionState.ENTERING
    wait_started_at: float | None = None
    poll_attempts: int = 0
    seat_id: Any = None
    history: list[SessionState] = field(default_factory=list)
