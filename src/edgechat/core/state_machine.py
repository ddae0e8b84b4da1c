from __future__ import annotations

from typing import Dict, List

from ..domain.turn_models import SessionState, TurnState

TURN_TRANSITIONS: Dict[TurnState, List[TurnState]] = {
    TurnState.IDLE: [TurnState.PREPARING],
    TurnState.PREPARING: [TurnState.STREAMING, TurnState.CANCELLED, TurnState.FAILED],
    TurnState.STREAMING: [TurnState.COMPLETED, TurnState.CANCELLED, TurnState.FAILED],
    TurnState.COMPLETED: [],
    TurnState.CANCELLED: [],
    TurnState.FAILED: [],
}

SESSION_TRANSITIONS: Dict[SessionState, List[SessionState]] = {
    SessionState.CREATED: [SessionState.ACTIVE, SessionState.DESTROYED],
    SessionState.ACTIVE: [SessionState.RESETTING, SessionState.DESTROYED],
    SessionState.RESETTING: [SessionState.ACTIVE, SessionState.DESTROYED],
    SessionState.DESTROYED: [],
}


def is_valid_transition(current: TurnState, target: TurnState) -> bool:
    return target in TURN_TRANSITIONS.get(current, [])


def is_valid_session_transition(current: SessionState, target: SessionState) -> bool:
    return target in SESSION_TRANSITIONS.get(current, [])
