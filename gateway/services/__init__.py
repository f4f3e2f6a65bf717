from gateway.services.state_machine import (
    ConversationState,
    InvalidTransitionError,
    can_transition,
    transition,
)
