from gateway.models.conversation import ConversationContext
from gateway.models.rate_limit import BlacklistEntry, RateRecord
from gateway.models.retry import InboundEvent, RetryRecord, RetryStatus

__all__ = [
    "BlacklistEntry",
    "ConversationContext",
    "InboundEvent",
    "RateRecord",
    "RetryRecord",
    "RetryStatus",
]
