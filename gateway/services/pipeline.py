"""Inbound message pipeline.

rate limit -> batch -> cache -> (per-user lock) downstream via breaker ->
business reply -> tracker -> cache store -> rate record.

Failures land where they belong: policy denials come back as ``denied``,
an unavailable dependency as ``fallback``, and a reply that could not be
built goes to the retry queue (``queued``).
"""

import asyncio
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional

from gateway.logging_config import bind_logger, get_logger
from gateway.models import ConversationContext, InboundEvent
from gateway.services.batcher import MessageBatcher
from gateway.services.conversation_tracker import ConversationTracker
from gateway.services.llm.base import LLMProvider
from gateway.services.rate_limiter import RateLimiter
from gateway.services.response_cache import ResponseCache, build_fingerprint, is_cacheable
from gateway.services.result import BreakerOutcome, Fallback
from gateway.services.retry_queue import RetryQueue, build_inbound_message_id

logger = get_logger("pipeline")

STATUS_REPLIED = "replied"
STATUS_DENIED = "denied"
STATUS_SUPPRESSED = "suppressed"
STATUS_CANCELLED = "cancelled"
STATUS_FALLBACK = "fallback"
STATUS_QUEUED = "queued"

QUEUED_MESSAGE = "We received your message and will reply shortly."

DEFAULT_SYSTEM_PROMPT = (
    "You are the GovConnect assistant for village administration services. "
    "Answer briefly and politely in the language the citizen used."
)

ReplySink = Callable[[InboundEvent, str], Awaitable[None]]


class DownstreamUnavailableError(Exception):
    def __init__(self, reason: str, detail: Optional[str] = None):
        self.reason = reason
        self.detail = detail
        message = f"Downstream unavailable ({reason})"
        if detail:
            message += f": {detail}"
        super().__init__(message)


@dataclass
class InboundMessage:
    user_id: str
    message: str
    message_id: Optional[str] = None
    conversation_id: Optional[str] = None
    channel: str = "whatsapp"
    timestamp: Optional[float] = None


@dataclass
class ProcessedReply:
    text: str
    intent: Optional[str] = None
    missing_fields: set[str] = field(default_factory=set)
    confirmed: bool = False
    cacheable: bool = True


@dataclass
class PipelineReply:
    status: str
    reply: Optional[str] = None
    reason: Optional[str] = None
    suppress_reply: bool = False
    cached: bool = False
    batch_size: int = 1
    message_id: Optional[str] = None
    retry_after: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "reply": self.reply,
            "reason": self.reason,
            "suppress_reply": self.suppress_reply,
            "cached": self.cached,
            "batch_size": self.batch_size,
            "message_id": self.message_id,
            "retry_after": self.retry_after,
        }


class MessageHandler(ABC):
    """Business side of processing: what to call and how to turn it into a reply."""

    @abstractmethod
    async def call_downstream(self, event: InboundEvent, context: ConversationContext) -> BreakerOutcome:
        pass

    @abstractmethod
    def build_reply(self, event: InboundEvent, context: ConversationContext, value: Any) -> ProcessedReply:
        pass


class LLMReplyHandler(MessageHandler):
    """Plain LLM answer; the reply text is whatever the model returns."""

    def __init__(self, provider: LLMProvider, system_prompt: str = DEFAULT_SYSTEM_PROMPT):
        self.provider = provider
        self.system_prompt = system_prompt

    async def call_downstream(self, event: InboundEvent, context: ConversationContext) -> BreakerOutcome:
        messages = [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": event.message},
        ]
        return await self.provider.generate(messages)

    def build_reply(self, event: InboundEvent, context: ConversationContext, value: Any) -> ProcessedReply:
        text = (value.content or "").strip()
        if not text:
            raise ValueError(f"Empty LLM response from {value.model}")
        return ProcessedReply(text=text, intent=context.last_intent, cacheable=not event.is_batched)


class _UserLock:
    def __init__(self):
        self.lock = asyncio.Lock()
        self.holders = 0


class InboundPipeline:
    def __init__(
        self,
        *,
        rate_limiter: RateLimiter,
        batcher: MessageBatcher,
        cache: ResponseCache,
        tracker: ConversationTracker,
        retry_queue: RetryQueue,
        handler: MessageHandler,
        reply_sink: Optional[ReplySink] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.rate_limiter = rate_limiter
        self.batcher = batcher
        self.cache = cache
        self.tracker = tracker
        self.retry_queue = retry_queue
        self.handler = handler
        self.reply_sink = reply_sink
        self._clock = clock
        self._locks: dict[str, _UserLock] = {}

    @asynccontextmanager
    async def _user_lock(self, user_id: str):
        entry = self._locks.get(user_id)
        if entry is None:
            entry = _UserLock()
            self._locks[user_id] = entry
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self._locks.get(user_id) is entry:
                del self._locks[user_id]

    async def handle(self, message: InboundMessage) -> PipelineReply:
        message_id = build_inbound_message_id(
            message.message_id, message.user_id, message.timestamp, message.message, received_at=self._clock()
        )
        log = bind_logger(logger, user_id=message.user_id, message_id=message_id)

        check = self.rate_limiter.check(message.user_id)
        if not check.allowed:
            log.info("Message denied", context={"reason": check.reason})
            return PipelineReply(
                status=STATUS_DENIED,
                reply=check.message,
                reason=check.reason,
                message_id=message_id,
                retry_after=check.retry_after,
            )

        conversation_key = message.conversation_id or message.user_id
        batch = await self.batcher.add_to_batch(conversation_key, message.message, message_id)
        if not batch.is_primary:
            return PipelineReply(
                status=STATUS_SUPPRESSED,
                suppress_reply=True,
                batch_size=batch.message_count,
                message_id=message_id,
            )
        if batch.cancelled:
            log.info("Batch cancelled, message not processed")
            return PipelineReply(status=STATUS_CANCELLED, batch_size=batch.message_count, message_id=message_id)

        event = InboundEvent(
            message_id=message_id,
            user_id=message.user_id,
            message=batch.combined_message,
            conversation_id=message.conversation_id,
            channel=message.channel,
            is_batched=batch.is_batched,
            batched_message_ids=batch.message_ids if batch.is_batched else (),
            received_at=self._clock(),
        )
        async with self._user_lock(message.user_id):
            reply = await self._process(event, log)
        reply.batch_size = batch.message_count
        return reply

    async def _process(self, event: InboundEvent, log) -> PipelineReply:
        state = self.tracker.state_of(event.user_id)
        fingerprint = build_fingerprint(event.message, state=state.value)

        entry = self.cache.lookup(fingerprint)
        if entry is not None:
            cached: ProcessedReply = entry.reply
            self.tracker.update(event.user_id, cached.intent, cached.missing_fields)
            log.info("Replied from cache")
            return PipelineReply(status=STATUS_REPLIED, reply=cached.text, cached=True, message_id=event.message_id)

        context = self.tracker.get(event.user_id)
        try:
            outcome = await self.handler.call_downstream(event, context)
        except Exception as exc:
            log.exception("Downstream call raised")
            outcome = Fallback(reason="failure", detail=f"{type(exc).__name__}: {exc}")
        if isinstance(outcome, Fallback):
            log.warning("Downstream unavailable, returning fallback", context={"reason": outcome.reason})
            return PipelineReply(
                status=STATUS_FALLBACK,
                reply=outcome.message,
                reason=outcome.reason,
                message_id=event.message_id,
            )

        try:
            reply = self.handler.build_reply(event, context, outcome.value)
        except Exception as exc:
            log.exception("Reply processing failed, message queued for retry")
            self.retry_queue.enqueue(event, exc)
            return PipelineReply(
                status=STATUS_QUEUED,
                reply=QUEUED_MESSAGE,
                reason="processing_failed",
                message_id=event.message_id,
            )

        self._apply(event, reply)
        if reply.cacheable and is_cacheable(event.message):
            self.cache.store(fingerprint, reply, metadata={"intent": reply.intent})
        log.info("Message processed")
        return PipelineReply(status=STATUS_REPLIED, reply=reply.text, message_id=event.message_id)

    def _apply(self, event: InboundEvent, reply: ProcessedReply) -> None:
        self.tracker.update(event.user_id, reply.intent, reply.missing_fields, reply.confirmed)
        self.rate_limiter.record(event.user_id)

    async def reprocess(self, event: InboundEvent) -> ProcessedReply:
        """Processor for the retry queue: any exception counts as a failed attempt."""
        async with self._user_lock(event.user_id):
            context = self.tracker.get(event.user_id)
            outcome = await self.handler.call_downstream(event, context)
            if isinstance(outcome, Fallback):
                raise DownstreamUnavailableError(outcome.reason, outcome.detail)
            reply = self.handler.build_reply(event, context, outcome.value)
            if self.reply_sink is not None:
                await self.reply_sink(event, reply.text)
            self._apply(event, reply)
        logger.info(
            "Queued message processed",
            extra={"context": {"message_id": event.message_id, "user_id": event.user_id}},
        )
        return reply

    def cancel(self, conversation_id: str) -> bool:
        """Drop the pending batch, e.g. when an operator takes over the conversation."""
        return self.batcher.cancel_batch(conversation_id)

    def active_users(self) -> Iterable[str]:
        return list(self._locks)
