from enum import Enum


class ConversationState(str, Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    EXPIRED = "expired"


TERMINAL_STATES = frozenset({ConversationState.EXPIRED})

VALID_TRANSITIONS = {
    ConversationState.IDLE: [
        ConversationState.COLLECTING,
        ConversationState.AWAITING_CONFIRMATION,
        ConversationState.EXPIRED,
    ],
    ConversationState.COLLECTING: [
        ConversationState.AWAITING_CONFIRMATION,
        ConversationState.IDLE,
        ConversationState.EXPIRED,
    ],
    ConversationState.AWAITING_CONFIRMATION: [
        ConversationState.COMPLETED,
        ConversationState.COLLECTING,
        ConversationState.IDLE,
        ConversationState.EXPIRED,
    ],
    ConversationState.COMPLETED: [
        ConversationState.IDLE,
        ConversationState.COLLECTING,
        ConversationState.EXPIRED,
    ],
    ConversationState.EXPIRED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: ConversationState, to_state: ConversationState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: ConversationState, to_state: ConversationState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: ConversationState, to_state: ConversationState) -> ConversationState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def next_state(
    current: ConversationState,
    missing_fields: set[str],
    confirmed: bool = False,
) -> ConversationState:
    """Derive the target state from what the caller reported for this turn.

    Returns ``current`` when the turn does not move the conversation.
    """
    if current in TERMINAL_STATES:
        return current
    if missing_fields:
        return ConversationState.COLLECTING
    if current == ConversationState.COLLECTING:
        return ConversationState.AWAITING_CONFIRMATION
    if current == ConversationState.AWAITING_CONFIRMATION and confirmed:
        return ConversationState.COMPLETED
    if current == ConversationState.COMPLETED:
        return ConversationState.IDLE
    return current


def expire(current_state: ConversationState) -> ConversationState:
    """Inactivity timeout."""
    return transition(current_state, ConversationState.EXPIRED)
