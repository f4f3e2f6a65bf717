from dataclasses import dataclass, field
from typing import Optional

from gateway.models.timestamps import to_iso
from gateway.services.state_machine import ConversationState


@dataclass
class ConversationContext:
    user_id: str
    created_at: float
    updated_at: float
    state: ConversationState = ConversationState.IDLE
    previous_state: ConversationState = ConversationState.IDLE
    message_count: int = 0
    last_intent: Optional[str] = None
    missing_fields: set[str] = field(default_factory=set)
    resolved_fields: set[str] = field(default_factory=set)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "state": self.state.value,
            "previous_state": self.previous_state.value,
            "message_count": self.message_count,
            "last_intent": self.last_intent,
            "missing_fields": sorted(self.missing_fields),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }
