from edgechat.core.state_machine import is_valid_session_transition, is_valid_transition
from edgechat.domain.turn_models import SessionState, TurnState


def test_turn_happy_path():
    assert is_valid_transition(TurnState.IDLE, TurnState.PREPARING)
    assert is_valid_transition(TurnState.PREPARING, TurnState.STREAMING)
    assert is_valid_transition(TurnState.STREAMING, TurnState.COMPLETED)


def test_turn_cancel_and_fail_from_any_live_state():
    for state in (TurnState.PREPARING, TurnState.STREAMING):
        assert is_valid_transition(state, TurnState.CANCELLED)
        assert is_valid_transition(state, TurnState.FAILED)


def test_terminal_turn_states_are_final():
    for state in (TurnState.COMPLETED, TurnState.CANCELLED, TurnState.FAILED):
        assert not is_valid_transition(state, TurnState.STREAMING)
        assert not is_valid_transition(state, TurnState.CANCELLED)


def test_turn_cannot_skip_preparing():
    assert not is_valid_transition(TurnState.IDLE, TurnState.STREAMING)
    assert not is_valid_transition(TurnState.PREPARING, TurnState.COMPLETED)


def test_session_lifecycle():
    assert is_valid_session_transition(SessionState.CREATED, SessionState.ACTIVE)
    assert is_valid_session_transition(SessionState.ACTIVE, SessionState.RESETTING)
    assert is_valid_session_transition(SessionState.RESETTING, SessionState.ACTIVE)
    assert is_valid_session_transition(SessionState.RESETTING, SessionState.DESTROYED)
    assert not is_valid_session_transition(SessionState.DESTROYED, SessionState.ACTIVE)
