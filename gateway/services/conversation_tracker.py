"""Per-user dialogue progress.

The tracker does not interpret intents: callers report the intent and the
fields still missing, and the state follows from those.
"""

import time
from collections import Counter
from typing import Callable, Iterable, Optional

from gateway.logging_config import get_logger
from gateway.models import ConversationContext
from gateway.services.state_machine import (
    TERMINAL_STATES,
    ConversationState,
    expire,
    next_state,
    transition,
)

logger = get_logger("conversation_tracker")

DEFAULT_CONTEXT_TTL_SECONDS = 30 * 60


class ConversationTracker:
    def __init__(
        self,
        *,
        context_ttl_seconds: float = DEFAULT_CONTEXT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.context_ttl_seconds = context_ttl_seconds
        self._clock = clock
        self._contexts: dict[str, ConversationContext] = {}

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "ConversationTracker":
        return cls(context_ttl_seconds=settings.context_ttl_seconds, **kwargs)

    def _is_stale(self, context: ConversationContext, now: float) -> bool:
        return now - context.updated_at > self.context_ttl_seconds

    def get(self, user_id: str) -> ConversationContext:
        """Return the live context for ``user_id``, starting a fresh one if needed."""
        now = self._clock()
        context = self._contexts.get(user_id)
        if context is not None and (context.state in TERMINAL_STATES or self._is_stale(context, now)):
            self._evict(user_id, context)
            context = None
        if context is None:
            context = ConversationContext(user_id=user_id, created_at=now, updated_at=now)
            self._contexts[user_id] = context
        return context

    def state_of(self, user_id: str) -> ConversationState:
        """Current state without creating a context."""
        context = self._contexts.get(user_id)
        if context is None or self._is_stale(context, self._clock()):
            return ConversationState.IDLE
        return context.state

    def update(
        self,
        user_id: str,
        intent: Optional[str],
        missing_fields: Iterable[str] = (),
        confirmed: bool = False,
    ) -> ConversationContext:
        context = self.get(user_id)
        missing = set(missing_fields)
        target = next_state(context.state, missing, confirmed)

        if target != context.state:
            previous = context.state
            context.state = transition(previous, target)
            context.previous_state = previous
            logger.info(
                "Conversation state changed",
                extra={
                    "context": {
                        "user_id": user_id,
                        "from_state": previous.value,
                        "to_state": target.value,
                        "intent": intent,
                    }
                },
            )

        context.resolved_fields |= context.missing_fields - missing
        context.resolved_fields -= missing
        context.missing_fields = missing
        context.message_count += 1
        if intent:
            context.last_intent = intent
        context.updated_at = max(self._clock(), context.created_at)
        return context

    def reset(self, user_id: str) -> bool:
        return self._contexts.pop(user_id, None) is not None

    def _evict(self, user_id: str, context: ConversationContext) -> None:
        if context.state not in TERMINAL_STATES:
            context.previous_state = context.state
            context.state = expire(context.state)
        self._contexts.pop(user_id, None)
        logger.debug(
            "Conversation context expired",
            extra={"context": {"user_id": user_id, "last_state": context.previous_state.value}},
        )

    def sweep(self) -> int:
        """Expire and drop contexts idle longer than the TTL."""
        now = self._clock()
        stale = [(uid, ctx) for uid, ctx in self._contexts.items() if self._is_stale(ctx, now)]
        for user_id, context in stale:
            self._evict(user_id, context)
        if stale:
            logger.info("Conversation contexts swept", extra={"context": {"expired": len(stale)}})
        return len(stale)

    def list_active(self) -> list[ConversationContext]:
        now = self._clock()
        return [ctx for ctx in self._contexts.values() if not self._is_stale(ctx, now)]

    def stats(self) -> dict:
        active = self.list_active()
        by_state = Counter(ctx.state.value for ctx in active)
        avg = sum(ctx.message_count for ctx in active) / len(active) if active else 0.0
        return {
            "active_contexts": len(active),
            "avg_message_count": round(avg, 2),
            "by_state": dict(by_state),
        }
