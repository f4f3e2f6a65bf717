"""Coalesce bursts of messages from one conversation into a single request.

The first message of a burst opens a window and becomes the primary; it waits
until the window deadline (or until the window fills up) and then carries the
combined text. Messages arriving while the window is open are appended and
return at once with ``suppress_reply`` set: the primary answers for them.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from gateway.logging_config import get_logger
from gateway.models.timestamps import to_iso

logger = get_logger("batcher")

DEFAULT_BATCH_DELAY_SECONDS = 3.0
DEFAULT_MAX_BATCH_SIZE = 10
BATCH_SEPARATOR = "\n"


@dataclass
class BatchWindow:
    conversation_id: str
    primary_request_id: str
    opened_at: float
    deadline: float
    messages: list[str] = field(default_factory=list)
    message_ids: list[str] = field(default_factory=list)
    closed: bool = False
    cancelled: bool = False
    close_reason: Optional[str] = None
    done: asyncio.Event = field(default_factory=asyncio.Event)

    def to_dict(self) -> dict:
        return {
            "conversation_id": self.conversation_id,
            "primary_request_id": self.primary_request_id,
            "message_count": len(self.messages),
            "opened_at": to_iso(self.opened_at),
            "deadline": to_iso(self.deadline),
            "closed": self.closed,
        }


@dataclass
class BatchResult:
    is_primary: bool
    is_batched: bool
    message_count: int
    combined_message: Optional[str] = None
    message_ids: tuple[str, ...] = ()
    cancelled: bool = False

    @property
    def suppress_reply(self) -> bool:
        """Secondary messages get no reply of their own."""
        return not self.is_primary


class MessageBatcher:
    def __init__(
        self,
        *,
        batch_delay_seconds: float = DEFAULT_BATCH_DELAY_SECONDS,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        clock: Callable[[], float] = time.time,
    ):
        if batch_delay_seconds < 0:
            raise ValueError("batch_delay_seconds must be non-negative")
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        self.batch_delay_seconds = batch_delay_seconds
        self.max_batch_size = max_batch_size
        self._clock = clock
        self._windows: dict[str, BatchWindow] = {}
        self._request_seq = 0

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "MessageBatcher":
        return cls(
            batch_delay_seconds=settings.batch_delay_seconds,
            max_batch_size=settings.max_batch_size,
            **kwargs,
        )

    def _close(self, window: BatchWindow, reason: str) -> bool:
        """Close ``window`` once; later calls are no-ops."""
        if window.closed:
            return False
        window.closed = True
        window.close_reason = reason
        if self._windows.get(window.conversation_id) is window:
            del self._windows[window.conversation_id]
        window.done.set()
        return True

    async def add_to_batch(
        self,
        conversation_id: str,
        message: str,
        message_id: Optional[str] = None,
    ) -> BatchResult:
        window = self._windows.get(conversation_id)

        if window is not None and not window.closed:
            window.messages.append(message)
            if message_id:
                window.message_ids.append(message_id)
            count = len(window.messages)
            logger.debug(
                "Message added to open batch",
                extra={"context": {"conversation_id": conversation_id, "message_count": count}},
            )
            if count >= self.max_batch_size:
                self._close(window, "max_size")
                logger.info(
                    "Batch full, closing early",
                    extra={"context": {"conversation_id": conversation_id, "message_count": count}},
                )
            return BatchResult(is_primary=False, is_batched=True, message_count=count)

        self._request_seq += 1
        now = self._clock()
        window = BatchWindow(
            conversation_id=conversation_id,
            primary_request_id=message_id or f"batch-{self._request_seq}",
            opened_at=now,
            deadline=now + self.batch_delay_seconds,
            messages=[message],
            message_ids=[message_id] if message_id else [],
        )
        self._windows[conversation_id] = window
        if self.max_batch_size == 1:
            self._close(window, "max_size")

        try:
            timeout = max(0.0, window.deadline - self._clock())
            try:
                await asyncio.wait_for(window.done.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
        finally:
            self._close(window, "deadline")

        count = len(window.messages)
        if window.cancelled:
            logger.info(
                "Batch cancelled before processing",
                extra={"context": {"conversation_id": conversation_id, "message_count": count}},
            )
            return BatchResult(is_primary=True, is_batched=count > 1, message_count=count, cancelled=True)

        if count > 1:
            logger.info(
                "Batch closed",
                extra={
                    "context": {
                        "conversation_id": conversation_id,
                        "message_count": count,
                        "reason": window.close_reason,
                    }
                },
            )
        return BatchResult(
            is_primary=True,
            is_batched=count > 1,
            message_count=count,
            combined_message=BATCH_SEPARATOR.join(window.messages),
            message_ids=tuple(window.message_ids),
        )

    def cancel_batch(self, conversation_id: str) -> bool:
        """Discard the open window; its primary wakes up with ``cancelled=True``."""
        window = self._windows.get(conversation_id)
        if window is None or window.closed:
            return False
        window.cancelled = True
        self._close(window, "cancelled")
        logger.info("Batch cancelled", extra={"context": {"conversation_id": conversation_id}})
        return True

    def has_pending_batch(self, conversation_id: str) -> bool:
        window = self._windows.get(conversation_id)
        return window is not None and not window.closed

    def get_batch_status(self, conversation_id: str) -> Optional[dict]:
        window = self._windows.get(conversation_id)
        if window is None:
            return None
        status = window.to_dict()
        status["remaining_seconds"] = max(0.0, round(window.deadline - self._clock(), 3))
        return status

    def list_batches(self) -> list[dict]:
        return [window.to_dict() for window in self._windows.values()]

    def stats(self) -> dict:
        return {
            "pending_batches": len(self._windows),
            "pending_messages": sum(len(w.messages) for w in self._windows.values()),
            "batch_delay_seconds": self.batch_delay_seconds,
            "max_batch_size": self.max_batch_size,
        }
