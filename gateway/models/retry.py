from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from gateway.models.timestamps import to_iso


class RetryStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    FAILED_PERMANENT = "failed_permanent"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class InboundEvent:
    """An inbound message as handed to processing (possibly a merged batch)."""

    message_id: str
    user_id: str
    message: str
    conversation_id: Optional[str] = None
    channel: str = "whatsapp"
    is_batched: bool = False
    batched_message_ids: tuple[str, ...] = ()
    received_at: Optional[float] = None

    @property
    def conversation_key(self) -> str:
        return self.conversation_id or self.user_id


@dataclass
class RetryRecord:
    event: InboundEvent
    max_attempts: int
    first_attempt_at: float
    last_attempt_at: float
    attempts: int = 1
    last_error: Optional[str] = None
    status: RetryStatus = RetryStatus.PENDING
    next_attempt_at: Optional[float] = None
    resolved_at: Optional[float] = None
    history: list[str] = field(default_factory=list)

    @property
    def message_id(self) -> str:
        return self.event.message_id

    def to_dict(self) -> dict:
        if self.event.is_batched:
            preview = f"[Batched: {len(self.event.batched_message_ids)} messages]"
        else:
            preview = self.event.message[:100]
        return {
            "message_id": self.event.message_id,
            "user_id": self.event.user_id,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "status": self.status.value,
            "last_error": self.last_error,
            "first_attempt_at": to_iso(self.first_attempt_at),
            "last_attempt_at": to_iso(self.last_attempt_at),
            "original_message": preview,
        }
