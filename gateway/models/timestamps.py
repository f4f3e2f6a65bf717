from datetime import datetime, timezone
from typing import Optional


def to_iso(ts: Optional[float]) -> Optional[str]:
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def utc_date(ts: float) -> str:
    """Calendar day (UTC, YYYY-MM-DD) containing ``ts``."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).date().isoformat()


def seconds_until_next_day(ts: float) -> int:
    current = datetime.fromtimestamp(ts, tz=timezone.utc)
    midnight = current.replace(hour=0, minute=0, second=0, microsecond=0)
    return int(86400 - (current - midnight).total_seconds())
