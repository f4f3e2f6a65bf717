from __future__ import annotations

import hashlib
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from gateway.logging_config import get_logger
from gateway.models import InboundEvent, RetryRecord, RetryStatus
from gateway.services.alert_service import alert_error
from gateway.services.result import Result
from gateway.services.storage import InMemoryRetryStore, RetryStore

logger = get_logger("retry_queue")

DEFAULT_MAX_ATTEMPTS = 10
MAX_ERROR_HISTORY = 10

Processor = Callable[[InboundEvent], Awaitable[Any]]


def build_inbound_message_id(
    message_id: str | None,
    user_id: str | None,
    timestamp: int | float | None,
    message_text: str | None,
    received_at: float | None = None,
) -> str:
    """Stable id for an inbound message.

    Provider id first, then sender + provider timestamp. Without either, the
    text is hashed together with ``received_at`` so a repeated message gets
    its own id.
    """
    if message_id:
        return message_id.strip()
    if user_id and timestamp is not None:
        return f"{user_id}:{int(timestamp)}"
    if user_id and message_text:
        seed = message_text if received_at is None else f"{received_at!r}|{message_text}"
        digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()[:16]
        return f"{user_id}:{digest}"
    return str(uuid.uuid4())


@dataclass
class RetryAttemptResult:
    message_id: str
    success: bool
    status: str
    attempts: int
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "success": self.success,
            "status": self.status,
            "attempts": self.attempts,
            "error": self.error,
        }


class RetryQueue:
    """Messages whose processing failed after in-line retries were exhausted.

    Records retry on a schedule (``process_due``) until ``max_attempts``; after
    that they stay ``failed_permanent`` until an operator retries or clears them.
    """

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_backoff_seconds: float = 30.0,
        processor: Optional[Processor] = None,
        store: Optional[RetryStore] = None,
        clock: Callable[[], float] = time.time,
        alert_func: Callable[[str, Optional[dict]], bool] = alert_error,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.store = store or InMemoryRetryStore()
        self._processor = processor
        self._clock = clock
        self._alert = alert_func

    def bind_processor(self, processor: Processor) -> None:
        self._processor = processor

    def _next_attempt_at(self, attempts: int) -> float:
        return self._clock() + self.retry_backoff_seconds * attempts

    def enqueue(self, event: InboundEvent, error: BaseException | str) -> RetryRecord:
        error_text = _format_error(error)
        now = self._clock()
        record = self.store.get(event.message_id)

        if record is not None and record.status not in (RetryStatus.RESOLVED,):
            if record.status == RetryStatus.RETRYING:
                # the running retry records its own outcome
                return record
            self._register_failure(record, error_text)
            return record

        record = RetryRecord(
            event=event,
            max_attempts=self.max_attempts,
            first_attempt_at=now,
            last_attempt_at=now,
            attempts=1,
            last_error=error_text,
            status=RetryStatus.PENDING,
            next_attempt_at=self._next_attempt_at(1),
        )
        record.history.append(error_text)
        if record.attempts >= record.max_attempts:
            self._mark_failed_permanent(record)
        self.store.put(record)
        logger.warning(
            "Message added to retry queue",
            extra={
                "context": {
                    "message_id": event.message_id,
                    "user_id": event.user_id,
                    "error": error_text,
                }
            },
        )
        return record

    def _register_failure(self, record: RetryRecord, error_text: str) -> None:
        now = self._clock()
        record.attempts = min(record.attempts + 1, record.max_attempts)
        record.last_attempt_at = now
        record.last_error = error_text
        record.history.append(error_text)
        del record.history[:-MAX_ERROR_HISTORY]

        if record.attempts >= record.max_attempts:
            self._mark_failed_permanent(record)
        else:
            record.status = RetryStatus.PENDING
            record.next_attempt_at = self._next_attempt_at(record.attempts)
            logger.info(
                "Retry failed, rescheduled",
                extra={
                    "context": {
                        "message_id": record.message_id,
                        "attempts": record.attempts,
                        "max_attempts": record.max_attempts,
                        "error": error_text,
                    }
                },
            )

    def _mark_failed_permanent(self, record: RetryRecord) -> None:
        already_failed = record.status == RetryStatus.FAILED_PERMANENT
        record.status = RetryStatus.FAILED_PERMANENT
        record.next_attempt_at = None
        logger.error(
            "Message failed permanently, operator action required",
            extra={
                "context": {
                    "message_id": record.message_id,
                    "user_id": record.event.user_id,
                    "attempts": record.attempts,
                    "error": record.last_error,
                }
            },
        )
        if not already_failed:
            self._alert(
                "Message failed permanently",
                {
                    "message_id": record.message_id,
                    "user_id": record.event.user_id,
                    "attempts": record.attempts,
                    "error": (record.last_error or "")[:200],
                },
            )

    async def retry(self, message_id: str) -> Result[RetryRecord]:
        """Re-run processing for one stored message (operator or scheduler)."""
        if not message_id or not message_id.strip():
            return Result.failure("message_id is required", "invalid_request")

        record = self.store.get(message_id)
        if record is None:
            return Result.failure(f"Message {message_id} not found in retry queue", "not_found")
        if record.status == RetryStatus.RETRYING:
            return Result.failure(f"Message {message_id} is already being retried", "in_progress")
        if record.status == RetryStatus.RESOLVED:
            return Result.failure(f"Message {message_id} is already resolved", "already_resolved")
        if self._processor is None:
            return Result.failure("No processor bound to retry queue", "no_processor")

        previous_status = record.status
        record.status = RetryStatus.RETRYING
        logger.info(
            "Retrying message",
            extra={
                "context": {
                    "message_id": message_id,
                    "attempts": record.attempts,
                    "from_status": previous_status.value,
                }
            },
        )

        try:
            await self._processor(record.event)
        except Exception as exc:
            error_text = _format_error(exc)
            self._register_failure(record, error_text)
            return Result.failure(error_text, "processing_failed")
        except BaseException:
            # cancelled mid-attempt (e.g. shutdown): the attempt does not count
            record.status = previous_status
            logger.warning(
                "Retry interrupted, status restored",
                extra={"context": {"message_id": message_id, "status": previous_status.value}},
            )
            raise

        now = self._clock()
        record.status = RetryStatus.RESOLVED
        record.last_attempt_at = now
        record.resolved_at = now
        record.next_attempt_at = None
        logger.info(
            "Message retry succeeded",
            extra={"context": {"message_id": message_id, "attempts": record.attempts}},
        )
        return Result.success(record)

    async def _retry_records(self, records: list[RetryRecord]) -> list[RetryAttemptResult]:
        results: list[RetryAttemptResult] = []
        for record in records:
            result = await self.retry(record.message_id)
            results.append(
                RetryAttemptResult(
                    message_id=record.message_id,
                    success=result.ok,
                    status=record.status.value,
                    attempts=record.attempts,
                    error=result.error,
                    error_code=result.error_code,
                )
            )
        return results

    async def retry_all(self) -> list[RetryAttemptResult]:
        """Operator bulk retry of every pending or permanently failed message."""
        candidates = [
            record
            for record in self.store.values()
            if record.status in (RetryStatus.PENDING, RetryStatus.FAILED_PERMANENT)
        ]
        logger.info("Retrying all failed messages", extra={"context": {"count": len(candidates)}})
        return await self._retry_records(candidates)

    async def process_due(self) -> list[RetryAttemptResult]:
        """Scheduled retries: pending records whose backoff has elapsed."""
        now = self._clock()
        due = [
            record
            for record in self.store.values()
            if record.status == RetryStatus.PENDING
            and (record.next_attempt_at is None or record.next_attempt_at <= now)
        ]
        if not due:
            return []
        return await self._retry_records(due)

    def get(self, message_id: str) -> Optional[RetryRecord]:
        return self.store.get(message_id)

    def list(self) -> list[dict]:
        return [record.to_dict() for record in self.store.values()]

    def active(self) -> list[RetryRecord]:
        return [record for record in self.store.values() if record.status != RetryStatus.RESOLVED]

    def clear(self, all: bool = False) -> int:
        """Remove resolved records; with ``all`` also pending and failed ones."""
        removable = {RetryStatus.RESOLVED}
        if all:
            removable |= {RetryStatus.PENDING, RetryStatus.FAILED_PERMANENT}
        cleared = 0
        for record in self.store.values():
            if record.status in removable:
                self.store.delete(record.message_id)
                cleared += 1
        if cleared:
            logger.info(
                "Retry queue cleared",
                extra={"context": {"cleared": cleared, "clear_type": "all" if all else "resolved-only"}},
            )
        return cleared

    def status(self) -> dict:
        counts = {status.value: 0 for status in RetryStatus}
        for record in self.store.values():
            counts[record.status.value] += 1
        return {
            "queue_size": sum(counts.values()) - counts[RetryStatus.RESOLVED.value],
            "max_attempts": self.max_attempts,
            **counts,
        }


def _format_error(error: BaseException | str) -> str:
    if isinstance(error, BaseException):
        message = str(error) or type(error).__name__
        return f"{type(error).__name__}: {message}" if str(error) else message
    return error or "Unknown error"
