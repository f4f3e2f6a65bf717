"""Backing stores for resilience state.

Everything lives in process memory and is rebuilt from zero on restart. The
abstract stores keep that an implementation detail: a durable backend only
has to implement the same methods.
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional

from gateway.models import BlacklistEntry, RateRecord, RetryRecord

SnapshotHook = Callable[[str, dict], None]


class RateLimitStore(ABC):
    """Per-user rate records and blacklist entries."""

    @abstractmethod
    def get_record(self, user_id: str) -> Optional[RateRecord]:
        pass

    @abstractmethod
    def put_record(self, record: RateRecord) -> None:
        pass

    @abstractmethod
    def records(self) -> list[RateRecord]:
        pass

    @abstractmethod
    def get_blacklist_entry(self, user_id: str) -> Optional[BlacklistEntry]:
        pass

    @abstractmethod
    def put_blacklist_entry(self, entry: BlacklistEntry) -> None:
        pass

    @abstractmethod
    def delete_blacklist_entry(self, user_id: str) -> bool:
        pass

    @abstractmethod
    def blacklist_entries(self) -> list[BlacklistEntry]:
        pass

    def snapshot(self) -> dict:
        return {
            "users": {record.user_id: record.to_dict() for record in self.records()},
            "blacklist": {entry.user_id: entry.to_dict() for entry in self.blacklist_entries()},
        }


class InMemoryRateLimitStore(RateLimitStore):
    def __init__(self):
        self._records: dict[str, RateRecord] = {}
        self._blacklist: dict[str, BlacklistEntry] = {}

    def get_record(self, user_id: str) -> Optional[RateRecord]:
        return self._records.get(user_id)

    def put_record(self, record: RateRecord) -> None:
        self._records[record.user_id] = record

    def records(self) -> list[RateRecord]:
        return list(self._records.values())

    def get_blacklist_entry(self, user_id: str) -> Optional[BlacklistEntry]:
        return self._blacklist.get(user_id)

    def put_blacklist_entry(self, entry: BlacklistEntry) -> None:
        self._blacklist[entry.user_id] = entry

    def delete_blacklist_entry(self, user_id: str) -> bool:
        return self._blacklist.pop(user_id, None) is not None

    def blacklist_entries(self) -> list[BlacklistEntry]:
        return list(self._blacklist.values())


class RetryStore(ABC):
    """Failed-message records keyed by message id, in insertion order."""

    @abstractmethod
    def get(self, message_id: str) -> Optional[RetryRecord]:
        pass

    @abstractmethod
    def put(self, record: RetryRecord) -> None:
        pass

    @abstractmethod
    def delete(self, message_id: str) -> bool:
        pass

    @abstractmethod
    def values(self) -> list[RetryRecord]:
        pass

    def snapshot(self) -> dict:
        return {"messages": [record.to_dict() for record in self.values()]}


class InMemoryRetryStore(RetryStore):
    def __init__(self):
        self._records: dict[str, RetryRecord] = {}

    def get(self, message_id: str) -> Optional[RetryRecord]:
        return self._records.get(message_id)

    def put(self, record: RetryRecord) -> None:
        self._records[record.message_id] = record

    def delete(self, message_id: str) -> bool:
        return self._records.pop(message_id, None) is not None

    def values(self) -> list[RetryRecord]:
        return list(self._records.values())
