"""LRU cache of downstream replies for repeated questions.

Keys are opaque fingerprints; ``build_fingerprint`` is the usual way to make
one from the user's text and the conversation context it was asked in.
"""

import hashlib
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from gateway.logging_config import get_logger
from gateway.models.timestamps import to_iso

logger = get_logger("response_cache")

DEFAULT_MAX_SIZE = 500
DEFAULT_TTL_SECONDS = 30 * 60

_PUNCTUATION = re.compile(r"[.,!?;:'\"()\[\]{}]")
_WHITESPACE = re.compile(r"\s+")
FILLER_WORDS = frozenset({"dong", "deh", "sih", "nih", "ya", "yah", "kak", "pak", "bu", "mas", "mbak"})
SYNONYMS = {
    "gimana": "bagaimana",
    "gak": "tidak",
    "ga": "tidak",
    "nggak": "tidak",
    "udah": "sudah",
    "aja": "saja",
    "bikin": "buat",
}

# Replies to these depend on who is asking
NON_CACHEABLE_PATTERNS = [
    re.compile(r"\b(cek|status)\s+(laporan|layanan|permohonan)\b", re.IGNORECASE),
    re.compile(r"\bLAP-\d+", re.IGNORECASE),
    re.compile(r"\bLAY-\d+", re.IGNORECASE),
    re.compile(r"\b\d{16}\b"),
    re.compile(r"\b08\d{8,12}\b"),
    re.compile(r"\b(riwayat|history)\s+(saya|ku)\b", re.IGNORECASE),
    re.compile(r"\b(lapor|ada\s+masalah).{20,}", re.IGNORECASE),
]


def normalize_query(text: str) -> str:
    """Reduce a question to an order-independent bag of meaningful words."""
    text = _PUNCTUATION.sub("", text.lower().strip())
    words = []
    for word in _WHITESPACE.split(text):
        word = SYNONYMS.get(word, word)
        if len(word) > 1 and word not in FILLER_WORDS:
            words.append(word)
    return " ".join(sorted(words))


def build_fingerprint(text: str, **context: Any) -> str:
    """sha256 over the normalized text and the sorted context items.

    Context values that are ``None`` are ignored, so ``state=None`` and no
    state produce the same key.
    """
    parts = [normalize_query(text)]
    for key in sorted(context):
        value = context[key]
        if value is not None:
            parts.append(f"{key}={value}")
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def is_cacheable(text: str) -> bool:
    if not text or not text.strip():
        return False
    return not any(pattern.search(text) for pattern in NON_CACHEABLE_PATTERNS)


@dataclass
class CacheEntry:
    fingerprint: str
    reply: Any
    created_at: float
    expires_at: Optional[float] = None
    hit_count: int = 0
    last_hit_at: Optional[float] = None
    metadata: dict = field(default_factory=dict)

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def to_dict(self) -> dict:
        return {
            "fingerprint": self.fingerprint[:16],
            "hit_count": self.hit_count,
            "created_at": to_iso(self.created_at),
            "last_hit_at": to_iso(self.last_hit_at),
            "expires_at": to_iso(self.expires_at),
            "metadata": self.metadata,
        }


class ResponseCache:
    def __init__(
        self,
        *,
        max_size: int = DEFAULT_MAX_SIZE,
        ttl_seconds: Optional[float] = DEFAULT_TTL_SECONDS,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.enabled = enabled
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "ResponseCache":
        return cls(
            max_size=settings.cache_max_size,
            ttl_seconds=settings.cache_ttl_seconds,
            enabled=settings.cache_enabled,
            **kwargs,
        )

    def lookup(self, fingerprint: str) -> Optional[CacheEntry]:
        if not self.enabled:
            return None
        entry = self._entries.get(fingerprint)
        if entry is None:
            self._misses += 1
            return None

        now = self._clock()
        if entry.is_expired(now):
            del self._entries[fingerprint]
            self._misses += 1
            logger.debug("Cache entry expired", extra={"context": {"fingerprint": fingerprint[:16]}})
            return None

        self._entries.move_to_end(fingerprint)
        entry.hit_count += 1
        entry.last_hit_at = now
        self._hits += 1
        logger.info(
            "Cache hit",
            extra={"context": {"fingerprint": fingerprint[:16], "hit_count": entry.hit_count}},
        )
        return entry

    def store(
        self,
        fingerprint: str,
        reply: Any,
        metadata: Optional[dict] = None,
        ttl: Optional[float] = None,
    ) -> Optional[CacheEntry]:
        """Insert or replace ``fingerprint``; evicts least recently used entries past ``max_size``."""
        if not self.enabled:
            return None
        now = self._clock()
        ttl = ttl if ttl is not None else self.ttl_seconds
        entry = CacheEntry(
            fingerprint=fingerprint,
            reply=reply,
            created_at=now,
            expires_at=now + ttl if ttl else None,
            metadata=dict(metadata or {}),
        )
        self._entries[fingerprint] = entry
        self._entries.move_to_end(fingerprint)

        while len(self._entries) > self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            self._evictions += 1
            logger.debug("Cache entry evicted", extra={"context": {"fingerprint": evicted[:16]}})
        return entry

    def invalidate_all(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        logger.info("Response cache cleared", extra={"context": {"cleared": count}})
        return count

    def set_enabled(self, enabled: bool) -> None:
        if self.enabled == enabled:
            return
        self.enabled = enabled
        if not enabled:
            self.invalidate_all()
        logger.info(f"Response cache {'enabled' if enabled else 'disabled'}")

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Purged expired cache entries", extra={"context": {"purged": len(expired)}})
        return len(expired)

    def top_entries(self, n: int = 10) -> list[CacheEntry]:
        return sorted(self._entries.values(), key=lambda e: e.hit_count, reverse=True)[:n]

    def stats(self) -> dict:
        lookups = self._hits + self._misses
        return {
            "enabled": self.enabled,
            "hits": self._hits,
            "misses": self._misses,
            "size": len(self._entries),
            "max_size": self.max_size,
            "evictions": self._evictions,
            "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
        }

    def __len__(self) -> int:
        return len(self._entries)
