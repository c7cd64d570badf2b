from __future__ import annotations

from enum import Enum

from bridge.errors import InvalidTransitionError


class SessionState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    INTERRUPTED = "interrupted"
    STOPPED = "stopped"
    CLOSED = "closed"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.ACTIVE, SessionState.STOPPED, SessionState.CLOSED}),
    SessionState.ACTIVE: frozenset({SessionState.INTERRUPTED, SessionState.STOPPED, SessionState.CLOSED}),
    # A fresh pipeline re-arms barge-in for the next turn.
    SessionState.INTERRUPTED: frozenset({SessionState.ACTIVE, SessionState.STOPPED, SessionState.CLOSED}),
    SessionState.STOPPED: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target is current or target in _TRANSITIONS[current]


def transition(current: SessionState, target: SessionState) -> SessionState:
    """Return ``target`` if the move is legal, otherwise raise."""

    if not can_transition(current, target):
        raise InvalidTransitionError(f"Cannot move session from {current.value} to {target.value}")
    return target
