import pytest
from gateway.services.state_machine import (
    ConversationState,
    InvalidTransitionError,
    can_transition,
    expire,
    next_state,
    transition,
)


class TestValidTransitions:
    def test_idle_to_collecting(self):
        result = transition(ConversationState.IDLE, ConversationState.COLLECTING)
        assert result == ConversationState.COLLECTING

    def test_collecting_to_awaiting_confirmation(self):
        result = transition(ConversationState.COLLECTING, ConversationState.AWAITING_CONFIRMATION)
        assert result == ConversationState.AWAITING_CONFIRMATION

    def test_awaiting_confirmation_back_to_collecting(self):
        result = transition(ConversationState.AWAITING_CONFIRMATION, ConversationState.COLLECTING)
        assert result == ConversationState.COLLECTING

    def test_completed_to_idle(self):
        result = transition(ConversationState.COMPLETED, ConversationState.IDLE)
        assert result == ConversationState.IDLE


class TestInvalidTransitions:
    def test_idle_to_completed(self):
        with pytest.raises(InvalidTransitionError):
            transition(ConversationState.IDLE, ConversationState.COMPLETED)

    def test_expired_is_terminal(self):
        for state in ConversationState:
            assert can_transition(ConversationState.EXPIRED, state) is False

    def test_same_state(self):
        with pytest.raises(InvalidTransitionError):
            transition(ConversationState.COLLECTING, ConversationState.COLLECTING)

    def test_error_message(self):
        with pytest.raises(InvalidTransitionError, match="idle -> completed"):
            transition(ConversationState.IDLE, ConversationState.COMPLETED)


class TestHelperFunctions:
    def test_expire_from_any_non_terminal_state(self):
        for state in ConversationState:
            if state == ConversationState.EXPIRED:
                continue
            assert expire(state) == ConversationState.EXPIRED

    def test_expire_twice_fails(self):
        with pytest.raises(InvalidTransitionError):
            expire(ConversationState.EXPIRED)


class TestNextState:
    def test_missing_fields_means_collecting(self):
        assert next_state(ConversationState.IDLE, {"address"}) == ConversationState.COLLECTING

    def test_all_fields_collected_asks_confirmation(self):
        assert next_state(ConversationState.COLLECTING, set()) == ConversationState.AWAITING_CONFIRMATION

    def test_confirmation_completes(self):
        state = next_state(ConversationState.AWAITING_CONFIRMATION, set(), confirmed=True)
        assert state == ConversationState.COMPLETED

    def test_unconfirmed_waits(self):
        state = next_state(ConversationState.AWAITING_CONFIRMATION, set())
        assert state == ConversationState.AWAITING_CONFIRMATION

    def test_completed_returns_to_idle(self):
        assert next_state(ConversationState.COMPLETED, set()) == ConversationState.IDLE

    def test_expired_stays(self):
        assert next_state(ConversationState.EXPIRED, {"address"}) == ConversationState.EXPIRED
