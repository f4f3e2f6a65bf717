"""Per-user rate limiting and blacklist.

Guards the expensive processing path:
- max processed requests per calendar day (UTC) per user
- cooldown between processed requests
- blacklist, fed automatically by repeated violations
"""

import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from gateway.logging_config import get_logger
from gateway.models import BlacklistEntry, RateRecord
from gateway.models.timestamps import seconds_until_next_day, utc_date
from gateway.services.storage import InMemoryRateLimitStore, RateLimitStore

logger = get_logger("rate_limiter")

AUTO_BLACKLIST_REASON = "rate-limit abuse"
DEFAULT_VIOLATION_THRESHOLD = 10

REASON_RATE_LIMIT = "rate_limit"
REASON_COOLDOWN = "cooldown"
REASON_BLACKLISTED = "blacklisted"
REASON_DISABLED = "disabled"

MSG_BLACKLISTED = "Your number has been blocked: {reason}"
MSG_COOLDOWN = "Please wait {seconds} seconds before sending a new request."
MSG_RATE_LIMIT = "You have reached the limit of {limit} requests per day. Please try again tomorrow."


@dataclass
class RateLimitResult:
    allowed: bool
    reason: Optional[str] = None
    remaining_reports: Optional[int] = None
    cooldown_remaining: Optional[int] = None
    retry_after: Optional[int] = None
    message: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"allowed": self.allowed}
        for key in ("reason", "remaining_reports", "cooldown_remaining", "retry_after", "message"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


class RateLimiter:
    def __init__(
        self,
        *,
        enabled: bool = True,
        max_per_day: int = 5,
        cooldown_seconds: float = 30,
        violation_threshold: int = DEFAULT_VIOLATION_THRESHOLD,
        store: Optional[RateLimitStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        if max_per_day < 0 or cooldown_seconds < 0:
            raise ValueError("max_per_day and cooldown_seconds must be non-negative")
        self.enabled = enabled
        self.max_per_day = max_per_day
        self.cooldown_seconds = cooldown_seconds
        self.violation_threshold = violation_threshold
        self.store = store or InMemoryRateLimitStore()
        self._clock = clock
        self._blocked_count = 0

        logger.info(
            "Rate limiter initialized",
            extra={
                "context": {
                    "enabled": enabled,
                    "max_per_day": max_per_day,
                    "cooldown_seconds": cooldown_seconds,
                }
            },
        )

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "RateLimiter":
        return cls(
            enabled=settings.rate_limit_enabled,
            max_per_day=settings.max_reports_per_day,
            cooldown_seconds=settings.cooldown_seconds,
            violation_threshold=settings.blacklist_violation_threshold,
            **kwargs,
        )

    def _get_record(self, user_id: str) -> RateRecord:
        today = utc_date(self._clock())
        record = self.store.get_record(user_id)
        if record is None:
            record = RateRecord(user_id=user_id, date=today)
            self.store.put_record(record)
        elif record.date != today:
            record.daily_count = 0
            record.date = today
        return record

    def check(self, user_id: str) -> RateLimitResult:
        """Decide whether ``user_id`` may take the expensive path now."""
        if not self.enabled:
            return RateLimitResult(allowed=True, reason=REASON_DISABLED)

        entry = self.get_blacklist_entry(user_id)
        if entry is not None:
            self._blocked_count += 1
            logger.warning(
                "Blocked blacklisted user",
                extra={"context": {"user_id": user_id, "reason": entry.reason}},
            )
            retry_after = None
            if entry.expires_at is not None:
                retry_after = max(0, math.ceil(entry.expires_at - self._clock()))
            return RateLimitResult(
                allowed=False,
                reason=REASON_BLACKLISTED,
                retry_after=retry_after,
                message=MSG_BLACKLISTED.format(reason=entry.reason),
            )

        record = self._get_record(user_id)
        now = self._clock()

        if self.cooldown_seconds > 0 and record.last_request_at > 0:
            elapsed = now - record.last_request_at
            if elapsed < self.cooldown_seconds:
                remaining = math.ceil(self.cooldown_seconds - elapsed)
                self._register_violation(record, REASON_COOLDOWN)
                return RateLimitResult(
                    allowed=False,
                    reason=REASON_COOLDOWN,
                    cooldown_remaining=remaining,
                    retry_after=remaining,
                    message=MSG_COOLDOWN.format(seconds=remaining),
                )

        if record.daily_count >= self.max_per_day:
            self._register_violation(record, REASON_RATE_LIMIT)
            return RateLimitResult(
                allowed=False,
                reason=REASON_RATE_LIMIT,
                remaining_reports=0,
                retry_after=seconds_until_next_day(now),
                message=MSG_RATE_LIMIT.format(limit=self.max_per_day),
            )

        return RateLimitResult(allowed=True, remaining_reports=self.max_per_day - record.daily_count)

    def _register_violation(self, record: RateRecord, reason: str) -> None:
        record.violation_count += 1
        self._blocked_count += 1
        logger.warning(
            "Rate limit violation",
            extra={
                "context": {
                    "user_id": record.user_id,
                    "reason": reason,
                    "daily_count": record.daily_count,
                    "violations": record.violation_count,
                }
            },
        )
        if record.violation_count >= self.violation_threshold:
            self.blacklist(record.user_id, AUTO_BLACKLIST_REASON, added_by="system")

    def record(self, user_id: str) -> None:
        """Count one processed request. Call only after the downstream work succeeded."""
        if not self.enabled:
            return
        record = self._get_record(user_id)
        record.daily_count += 1
        record.last_request_at = self._clock()
        logger.info(
            "Request recorded for rate limit",
            extra={
                "context": {
                    "user_id": user_id,
                    "daily_count": record.daily_count,
                    "max_per_day": self.max_per_day,
                }
            },
        )

    def get_blacklist_entry(self, user_id: str) -> Optional[BlacklistEntry]:
        entry = self.store.get_blacklist_entry(user_id)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            self.store.delete_blacklist_entry(user_id)
            logger.info("Blacklist entry expired", extra={"context": {"user_id": user_id}})
            return None
        return entry

    def is_blacklisted(self, user_id: str) -> bool:
        return self.get_blacklist_entry(user_id) is not None

    def blacklist(
        self,
        user_id: str,
        reason: str,
        added_by: str = "admin",
        ttl: Optional[float] = None,
    ) -> BlacklistEntry:
        """Block ``user_id``. ``ttl`` is in seconds; ``None`` blocks until removed."""
        if added_by not in ("system", "admin"):
            raise ValueError(f"added_by must be 'system' or 'admin', got {added_by!r}")
        if ttl is not None and ttl <= 0:
            raise ValueError("ttl must be positive")
        now = self._clock()
        entry = BlacklistEntry(
            user_id=user_id,
            reason=reason,
            added_at=now,
            added_by=added_by,
            expires_at=now + ttl if ttl is not None else None,
        )
        self.store.put_blacklist_entry(entry)
        logger.warning(
            "User added to blacklist",
            extra={"context": {"user_id": user_id, "reason": reason, "added_by": added_by, "ttl": ttl}},
        )
        return entry

    def unblacklist(self, user_id: str) -> bool:
        removed = self.store.delete_blacklist_entry(user_id)
        if removed:
            logger.info("User removed from blacklist", extra={"context": {"user_id": user_id}})
        return removed

    def list_blacklist(self) -> list[BlacklistEntry]:
        now = self._clock()
        return [entry for entry in self.store.blacklist_entries() if not entry.is_expired(now)]

    def reset_violations(self, user_id: str) -> bool:
        record = self.store.get_record(user_id)
        if record is None:
            return False
        record.violation_count = 0
        return True

    def get_user_info(self, user_id: str) -> Optional[RateRecord]:
        return self.store.get_record(user_id)

    def sweep(self) -> dict:
        """Reset rolled-over daily counts and purge expired blacklist entries."""
        now = self._clock()
        today = utc_date(now)
        reset_count = 0
        for record in self.store.records():
            if record.date != today:
                record.daily_count = 0
                record.date = today
                reset_count += 1

        purged = 0
        for entry in self.store.blacklist_entries():
            if entry.is_expired(now):
                self.store.delete_blacklist_entry(entry.user_id)
                purged += 1

        if reset_count or purged:
            logger.info(
                "Rate limit sweep",
                extra={"context": {"reset_count": reset_count, "purged_blacklist": purged}},
            )
        return {"reset_count": reset_count, "purged_blacklist": purged}

    def stats(self) -> dict:
        records = self.store.records()
        top_violators = sorted(
            (r for r in records if r.violation_count > 0),
            key=lambda r: r.violation_count,
            reverse=True,
        )[:10]
        return {
            "enabled": self.enabled,
            "max_per_day": self.max_per_day,
            "cooldown_seconds": self.cooldown_seconds,
            "total_blocked": self._blocked_count,
            "total_blacklisted": len(self.list_blacklist()),
            "active_users": sum(1 for r in records if r.daily_count > 0),
            "top_violators": [
                {
                    "user_id": r.user_id,
                    "violations": r.violation_count,
                    "daily_count": r.daily_count,
                }
                for r in top_violators
            ],
        }
