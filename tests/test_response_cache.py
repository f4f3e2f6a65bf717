import pytest

from gateway.services.response_cache import (
    ResponseCache,
    build_fingerprint,
    is_cacheable,
    normalize_query,
)


@pytest.fixture
def cache(clock):
    return ResponseCache(max_size=3, ttl_seconds=60, clock=clock)


class TestNormalizeQuery:
    def test_case_punctuation_and_order(self):
        assert normalize_query("Jam buka kantor?") == normalize_query("kantor BUKA jam!")

    def test_drops_filler_words_and_maps_slang(self):
        assert normalize_query("gimana bikin surat dong kak") == "bagaimana buat surat"


class TestFingerprint:
    def test_same_question_same_fingerprint(self):
        assert build_fingerprint("Jam buka kantor?") == build_fingerprint("jam  buka kantor")

    def test_context_changes_fingerprint(self):
        assert build_fingerprint("ya", state="idle") != build_fingerprint("ya", state="awaiting_confirmation")

    def test_context_order_is_irrelevant(self):
        assert build_fingerprint("halo", a=1, b=2) == build_fingerprint("halo", b=2, a=1)


class TestIsCacheable:
    @pytest.mark.parametrize(
        "text",
        [
            "cek status laporan LAP-20240101-001",
            "NIK saya 3201234567890123",
            "hubungi saya di 081234567890",
            "riwayat saya",
            "",
        ],
    )
    def test_user_specific_not_cacheable(self, text):
        assert is_cacheable(text) is False

    def test_general_question_cacheable(self):
        assert is_cacheable("jam buka kantor kelurahan") is True


class TestLookupAndStore:
    def test_round_trip_counts_one_hit(self, cache):
        cache.store("fp", "Kantor buka jam 08.00")
        entry = cache.lookup("fp")
        assert entry.reply == "Kantor buka jam 08.00"
        assert entry.hit_count == 1
        assert cache.stats()["hits"] == 1

    def test_miss_counted(self, cache):
        assert cache.lookup("unknown") is None
        assert cache.stats()["misses"] == 1

    def test_expired_entry_is_miss(self, cache, clock):
        cache.store("fp", "reply")
        clock.advance(61)
        assert cache.lookup("fp") is None
        assert cache.stats() == {
            "enabled": True,
            "hits": 0,
            "misses": 1,
            "size": 0,
            "max_size": 3,
            "evictions": 0,
            "hit_rate": 0.0,
        }

    def test_per_entry_ttl(self, cache, clock):
        cache.store("fp", "reply", ttl=600)
        clock.advance(120)
        assert cache.lookup("fp") is not None

    def test_lru_eviction(self, cache):
        for key in ("a", "b", "c"):
            cache.store(key, key)
        cache.lookup("a")
        cache.store("d", "d")

        assert cache.lookup("b") is None
        assert cache.lookup("a") is not None
        assert len(cache) == 3
        assert cache.stats()["evictions"] == 1

    def test_metadata_kept(self, cache):
        cache.store("fp", "reply", metadata={"intent": "KNOWLEDGE_QUERY"})
        assert cache.lookup("fp").metadata == {"intent": "KNOWLEDGE_QUERY"}

    def test_hit_rate(self, cache):
        cache.store("fp", "reply")
        cache.lookup("fp")
        cache.lookup("other")
        assert cache.stats()["hit_rate"] == 0.5


class TestEnableDisable:
    def test_disabled_cache_misses_without_counting(self, clock):
        cache = ResponseCache(enabled=False, clock=clock)
        assert cache.store("fp", "reply") is None
        assert cache.lookup("fp") is None
        assert cache.stats()["misses"] == 0
        assert cache.stats()["size"] == 0

    def test_disabling_invalidates(self, cache):
        cache.store("fp", "reply")
        cache.set_enabled(False)
        cache.set_enabled(True)
        assert cache.lookup("fp") is None


class TestMaintenance:
    def test_invalidate_all(self, cache):
        cache.store("a", "a")
        cache.store("b", "b")
        assert cache.invalidate_all() == 2
        assert len(cache) == 0

    def test_purge_expired(self, cache, clock):
        cache.store("old", "old")
        clock.advance(30)
        cache.store("new", "new")
        clock.advance(31)
        assert cache.purge_expired() == 1
        assert cache.lookup("new") is not None

    def test_top_entries(self, cache):
        cache.store("a", "a")
        cache.store("b", "b")
        cache.lookup("b")
        cache.lookup("b")
        cache.lookup("a")
        assert [entry.fingerprint for entry in cache.top_entries(2)] == ["b", "a"]
