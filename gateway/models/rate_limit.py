from dataclasses import dataclass
from typing import Optional

from gateway.models.timestamps import to_iso


@dataclass
class RateRecord:
    user_id: str
    date: str  # YYYY-MM-DD (UTC) the daily count applies to
    daily_count: int = 0
    last_request_at: float = 0.0
    violation_count: int = 0

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "daily_count": self.daily_count,
            "last_request_at": to_iso(self.last_request_at),
            "date": self.date,
            "violation_count": self.violation_count,
        }


@dataclass
class BlacklistEntry:
    user_id: str
    reason: str
    added_at: float
    added_by: str = "admin"  # system | admin
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "reason": self.reason,
            "added_at": to_iso(self.added_at),
            "added_by": self.added_by,
            "expires_at": to_iso(self.expires_at),
        }
