"""Tests for search result caching functionality."""

import json

import pytest

from cache import CacheEntry, CacheMetrics, SearchCache, SearchParams, make_cache_key
from cache_config import CacheConfig
from storage import MemoryStorage
from utils import BYTES_PER_MB, payload_size_bytes


class FakeClock:
    """Controllable epoch clock."""

    def __init__(self, now: float = 1_760_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


RESPONSE = {"success": True, "results": [{"id": "r-1", "title": "Corner Coffee"}], "totalResults": 1}


def search_keys(storage):
    return storage.keys("search_cache_")


class TestSearchCache:
    """Test cases for SearchCache class."""

    def test_cache_initialization(self):
        """Test cache initializes empty without persistence."""
        cache = SearchCache()
        assert len(cache) == 0
        assert cache.storage is None

    def test_cache_store_and_retrieve(self):
        """Test storing and retrieving from cache."""
        cache = SearchCache()
        params = SearchParams(query="coffee receipts", sources=["receipts"])

        cache.set(params, "user-1", RESPONSE)

        assert len(cache) == 1
        assert cache.get(params, "user-1") == RESPONSE

    def test_cache_case_insensitive(self):
        """Test cache keys ignore query case and surrounding whitespace."""
        cache = SearchCache()
        cache.set(SearchParams(query="Coffee Receipts"), "user-1", RESPONSE)

        assert cache.get(SearchParams(query="  coffee receipts "), "user-1") == RESPONSE

    def test_cache_scoped_by_user(self):
        """Test one user's results are not served to another."""
        cache = SearchCache()
        params = SearchParams(query="coffee receipts")
        cache.set(params, "user-1", RESPONSE)

        assert cache.get(params, "user-2") is None

    def test_cache_different_params(self):
        """Test different limits create different cache entries."""
        cache = SearchCache()
        cache.set(SearchParams(query="coffee", limit=5), "user-1", {"limit": 5})
        cache.set(SearchParams(query="coffee", limit=10), "user-1", {"limit": 10})

        assert len(cache) == 2
        assert cache.get(SearchParams(query="coffee", limit=5), "user-1") == {"limit": 5}
        assert cache.get(SearchParams(query="coffee", limit=10), "user-1") == {"limit": 10}

    def test_memory_ttl_expiration(self):
        """Test memory entries expire after their TTL."""
        clock = FakeClock()
        cache = SearchCache(config=CacheConfig(memory_ttl_seconds=10), clock=clock)
        params = SearchParams(query="coffee")
        cache.set(params, "user-1", RESPONSE)

        clock.advance(5)
        assert cache.get(params, "user-1") is not None

        clock.advance(6)
        assert cache.get(params, "user-1") is None
        assert len(cache) == 0

    def test_persistent_hit_promotes_to_memory(self):
        """Test an entry expired in memory is served from storage and promoted."""
        clock = FakeClock()
        storage = MemoryStorage()
        cache = SearchCache(storage=storage, clock=clock)
        params = SearchParams(query="coffee")
        cache.set(params, "user-1", RESPONSE)

        clock.advance(200)  # past the 180s memory TTL, within the 900s persistent TTL

        assert cache.get(params, "user-1") == RESPONSE
        assert len(cache) == 1

    def test_persistent_entry_expires(self):
        """Test expired persisted entries are removed on read."""
        clock = FakeClock()
        storage = MemoryStorage()
        cache = SearchCache(storage=storage, clock=clock)
        params = SearchParams(query="coffee")
        cache.set(params, "user-1", RESPONSE)

        clock.advance(901)

        assert cache.get(params, "user-1") is None
        assert search_keys(storage) == []

    def test_persisted_entries_shared_between_instances(self):
        """Test a new cache instance reads what another persisted."""
        storage = MemoryStorage()
        params = SearchParams(query="coffee")
        SearchCache(storage=storage).set(params, "user-1", RESPONSE)

        assert SearchCache(storage=storage).get(params, "user-1") == RESPONSE

    def test_temporal_query_bypasses_cache(self):
        """Test time-relative queries are neither stored nor served."""
        storage = MemoryStorage()
        cache = SearchCache(storage=storage)
        params = SearchParams(query="receipts from today")

        cache.set(params, "user-1", RESPONSE)

        assert len(cache) == 0
        assert search_keys(storage) == []
        assert cache.get(params, "user-1") is None
        assert cache.get_metrics().misses == 1

    def test_temporal_query_cached_when_bypass_disabled(self):
        """Test temporal queries are cached when the bypass is off."""
        cache = SearchCache(config=CacheConfig(bypass_temporal_queries=False))
        params = SearchParams(query="receipts from today")

        cache.set(params, "user-1", RESPONSE)

        assert cache.get(params, "user-1") == RESPONSE

    def test_cache_lru_eviction(self):
        """Test LRU eviction when the entry limit is reached."""
        cache = SearchCache(config=CacheConfig(max_memory_entries=3))

        for i in range(1, 4):
            cache.set(SearchParams(query=f"query{i}"), "user-1", {"n": i})

        # Access query1 to make it recently used
        cache.get(SearchParams(query="query1"), "user-1")

        # Add new entry, should evict query2 (least recently used)
        cache.set(SearchParams(query="query4"), "user-1", {"n": 4})

        assert len(cache) == 3
        assert cache.get(SearchParams(query="query1"), "user-1") is not None
        assert cache.get(SearchParams(query="query2"), "user-1") is None
        assert cache.get(SearchParams(query="query3"), "user-1") is not None
        assert cache.get(SearchParams(query="query4"), "user-1") is not None
        assert cache.get_metrics().evictions == 1

    def test_memory_size_budget_evicts(self):
        """Test entries are evicted when the memory budget would be exceeded."""
        size_mb = payload_size_bytes(RESPONSE) / BYTES_PER_MB
        cache = SearchCache(config=CacheConfig(max_memory_size_mb=size_mb * 1.5))

        cache.set(SearchParams(query="first"), "user-1", RESPONSE)
        cache.set(SearchParams(query="second"), "user-1", RESPONSE)

        assert len(cache) == 1
        assert cache.get(SearchParams(query="second"), "user-1") == RESPONSE
        assert cache.get_metrics().memory_usage == pytest.approx(size_mb)

    def test_cache_update_existing(self):
        """Test updating an existing cache entry replaces it."""
        cache = SearchCache()
        params = SearchParams(query="coffee")

        cache.set(params, "user-1", {"v": 1})
        cache.set(params, "user-1", {"v": 2})

        assert len(cache) == 1
        assert cache.get(params, "user-1") == {"v": 2}

    def test_large_payload_persisted_compressed(self):
        """Test payloads over the threshold are compressed in storage."""
        storage = MemoryStorage()
        cache = SearchCache(storage=storage, config=CacheConfig(compression_threshold=10))
        params = SearchParams(query="coffee")

        cache.set(params, "user-1", RESPONSE)

        record = json.loads(storage.get_item(search_keys(storage)[0]))
        assert record["compressed"] is True
        assert "data_z" in record
        assert "data" not in record
        assert cache.get_metrics().compressions == 1
        assert SearchCache(storage=storage).get(params, "user-1") == RESPONSE

    def test_corrupt_persisted_entry_dropped(self):
        """Test unreadable persisted entries count as a miss and are removed."""
        storage = MemoryStorage()
        params = SearchParams(query="coffee")
        storage_key = "search_cache_" + make_cache_key(params, "user-1")
        storage.set_item(storage_key, "not json{")

        cache = SearchCache(storage=storage)

        assert cache.get(params, "user-1") is None
        assert storage.get_item(storage_key) is None

    @pytest.mark.parametrize("record", [
        {"timestamp": "nan", "ttl": 900, "data": RESPONSE},
        {"timestamp": float("nan"), "ttl": 900, "data": RESPONSE},
        {"timestamp": 1_760_000_000.0, "ttl": float("inf"), "data": RESPONSE},
    ])
    def test_non_finite_persisted_metadata_dropped(self, record):
        """Test entries with NaN or infinite timestamps never count as fresh."""
        storage = MemoryStorage()
        params = SearchParams(query="coffee")
        storage_key = "search_cache_" + make_cache_key(params, "user-1")
        storage.set_item(storage_key, json.dumps(record))

        cache = SearchCache(storage=storage, clock=FakeClock())

        assert cache.get(params, "user-1") is None
        assert storage.get_item(storage_key) is None

    def test_quota_exceeded_clears_oldest_entries(self):
        """Test a full storage drops its oldest entries and retries the write."""
        clock = FakeClock()
        storage = MemoryStorage(max_items=4)
        cache = SearchCache(storage=storage, clock=clock)

        for i in range(4):
            cache.set(SearchParams(query=f"query{i}"), "user-1", {"n": i})
            clock.advance(1)

        cache.set(SearchParams(query="query4"), "user-1", {"n": 4})

        keys = search_keys(storage)
        assert len(keys) == 4
        assert "search_cache_" + make_cache_key(SearchParams(query="query0"), "user-1") not in keys
        assert "search_cache_" + make_cache_key(SearchParams(query="query4"), "user-1") in keys


class TestInvalidation:
    """Test cases for pattern-based invalidation."""

    def _populated_cache(self):
        storage = MemoryStorage()
        cache = SearchCache(storage=storage)
        cache.set(SearchParams(query="coffee receipts"), "user-1", RESPONSE)
        cache.set(SearchParams(query="fuel receipts"), "user-1", RESPONSE)
        cache.set(SearchParams(query="coffee receipts"), "user-2", RESPONSE)
        return cache, storage

    def test_invalidate_by_user(self):
        """Test invalidating every entry scoped to one user."""
        cache, storage = self._populated_cache()

        cleared = cache.invalidate_by_pattern("user-1")

        assert cleared == 2
        assert len(cache) == 1
        assert len(search_keys(storage)) == 1
        assert cache.get(SearchParams(query="coffee receipts"), "user-2") is not None

    def test_invalidate_by_query_text(self):
        """Test invalidating entries whose query matches a term."""
        cache, storage = self._populated_cache()

        cleared = cache.invalidate_by_pattern("COFFEE")

        assert cleared == 2
        assert cache.get(SearchParams(query="fuel receipts"), "user-1") is not None

    def test_invalidate_all(self):
        """Test clearing all cache entries."""
        cache, storage = self._populated_cache()

        cleared = cache.invalidate_by_pattern()

        assert cleared == 3
        assert len(cache) == 0
        assert search_keys(storage) == []
        assert cache.get_metrics().memory_usage == 0.0

    def test_invalidate_twice_is_noop(self):
        """Test a repeated invalidation finds nothing left to remove."""
        cache, _ = self._populated_cache()

        cache.invalidate_by_pattern("user-1")

        assert cache.invalidate_by_pattern("user-1") == 0

    def test_force_clear_query(self):
        """Test force clearing removes memory, search and conversation entries."""
        storage = MemoryStorage()
        cache = SearchCache(storage=storage)
        cache.set_for_conversation("conv_1", SearchParams(query="Coffee"), "user-1", RESPONSE)
        cache.set(SearchParams(query="tea"), "user-1", RESPONSE)

        cleared = cache.force_clear_query("COFFEE")

        assert cleared == 3
        assert len(cache) == 1
        assert storage.keys("conv_cache_") == []

    def test_clear_old_entries_removes_corrupt_first(self):
        """Test corrupt entries sort as oldest when freeing space."""
        clock = FakeClock()
        storage = MemoryStorage()
        cache = SearchCache(storage=storage, clock=clock)
        for i in range(3):
            cache.set(SearchParams(query=f"query{i}"), "user-1", {"n": i})
        storage.set_item("search_cache_corrupt", "{{{")

        removed = cache.clear_old_entries()

        assert removed == 1
        assert storage.get_item("search_cache_corrupt") is None
        assert len(search_keys(storage)) == 3

    def test_clear_temporal_conversation_cache(self):
        """Test temporal and unreadable conversation entries are cleared."""
        storage = MemoryStorage()
        cache = SearchCache(storage=storage, config=CacheConfig(bypass_temporal_queries=False))
        cache.set_for_conversation("conv_1", SearchParams(query="receipts from today"), "user-1", RESPONSE)
        cache.set_for_conversation("conv_2", SearchParams(query="coffee"), "user-1", RESPONSE)
        storage.set_item("conv_cache_conv_3_broken", "not json")

        cleared = cache.clear_temporal_conversation_cache()

        assert cleared == 2
        remaining = storage.keys("conv_cache_")
        assert len(remaining) == 1
        assert remaining[0].startswith("conv_cache_conv_conv_2_")


class TestConversationCache:
    """Test cases for conversation-scoped cache entries."""

    def test_conversation_cache_roundtrip(self):
        """Test storing and reading a conversation-scoped response."""
        cache = SearchCache(storage=MemoryStorage())
        params = SearchParams(query="coffee")

        cache.set_for_conversation("c1", params, "user-1", RESPONSE)

        assert cache.has_conversation_cache("c1", params, "user-1") is True
        assert cache.get_for_conversation("c1", params, "user-1") == RESPONSE

    def test_conversation_cache_expires_after_retention(self):
        """Test conversation entries older than the retention window are dropped."""
        clock = FakeClock()
        storage = MemoryStorage()
        cache = SearchCache(storage=storage, clock=clock)
        params = SearchParams(query="coffee")
        cache.set_for_conversation("c1", params, "user-1", RESPONSE)

        clock.advance(24 * 60 * 60 + 1)

        assert cache.has_conversation_cache("c1", params, "user-1") is False
        assert cache.get_for_conversation("c1", params, "user-1") is None
        assert storage.keys("conv_cache_") == []

    def test_conversation_cache_without_storage(self):
        """Test conversation lookups fall back to the memory tier."""
        cache = SearchCache()
        params = SearchParams(query="coffee")
        cache.set_for_conversation("c1", params, "user-1", RESPONSE)

        assert cache.has_conversation_cache("c1", params, "user-1") is False
        assert cache.get_for_conversation("c1", params, "user-1") == RESPONSE

    def test_temporal_conversation_lookup_when_bypass_disabled(self):
        """Test temporal queries use the conversation tier when the bypass is off."""
        clock = FakeClock()
        cache = SearchCache(
            storage=MemoryStorage(), config=CacheConfig(bypass_temporal_queries=False), clock=clock
        )
        params = SearchParams(query="receipts from today")
        cache.set_for_conversation("c1", params, "user-1", RESPONSE)

        clock.advance(1000)  # past both search cache TTLs, within retention

        assert cache.get(params, "user-1") is None
        assert cache.get_for_conversation("c1", params, "user-1") == RESPONSE

    def test_temporal_conversation_lookup_bypassed_by_default(self):
        """Test temporal queries skip the conversation tier by default."""
        clock = FakeClock()
        storage = MemoryStorage()
        cache = SearchCache(storage=storage, clock=clock)
        params = SearchParams(query="receipts from today")
        storage.set_item(
            "conv_cache_" + cache.get_conversation_cache_key("c1", params, "user-1"),
            json.dumps({"cachedAt": clock.now, "userId": "user-1", "results": RESPONSE}),
        )

        assert cache.get_for_conversation("c1", params, "user-1") is None

    def test_clear_conversation_cache_is_exact(self):
        """Test clearing one conversation leaves ids sharing a prefix intact."""
        storage = MemoryStorage()
        cache = SearchCache(storage=storage)
        params = SearchParams(query="coffee")
        cache.set_for_conversation("1", params, "user-1", RESPONSE)
        cache.set_for_conversation("12", params, "user-1", RESPONSE)

        assert cache.clear_conversation_cache("1") == 1
        assert cache.has_conversation_cache("12", params, "user-1") is True
        assert cache.clear_conversation_cache("missing") == 0


class TestCacheMetrics:
    """Test cases for cache statistics."""

    def test_cache_metrics(self):
        """Test hit and miss accounting."""
        cache = SearchCache()

        metrics = cache.get_metrics()
        assert metrics.hits == 0
        assert metrics.misses == 0
        assert metrics.cache_efficiency == 0.0

        cache.set(SearchParams(query="coffee"), "user-1", RESPONSE)
        cache.get(SearchParams(query="coffee"), "user-1")  # hit
        cache.get(SearchParams(query="other"), "user-1")  # miss

        metrics = cache.get_metrics()
        assert metrics.hits == 1
        assert metrics.misses == 1
        assert metrics.total_requests == 2
        assert metrics.cache_efficiency == 50.0
        assert metrics.entry_count == 1
        assert metrics.memory_usage > 0

    def test_metrics_to_dict(self):
        """Test CacheMetrics to_dict method."""
        metrics = CacheMetrics(hits=10, misses=5, evictions=2, total_requests=15,
                               cache_efficiency=66.6667, memory_usage=0.25, entry_count=8)

        d = metrics.to_dict()

        assert d["hits"] == 10
        assert d["misses"] == 5
        assert d["evictions"] == 2
        assert d["cache_efficiency"] == 66.67
        assert d["memory_usage"] == 0.25
        assert d["entry_count"] == 8

    def test_clear_stats_preserves_entries(self):
        """Test resetting statistics keeps cached entries."""
        cache = SearchCache()
        cache.set(SearchParams(query="coffee"), "user-1", RESPONSE)
        cache.get(SearchParams(query="coffee"), "user-1")

        cache.clear_stats()

        assert cache.get_metrics().hits == 0
        assert len(cache) == 1

    def test_warm_cache_reports_missing(self):
        """Test cache warming lists queries that still need a search."""
        cache = SearchCache()
        cached = SearchParams(query="coffee")
        cache.set(cached, "user-1", RESPONSE)

        missing = cache.warm_cache([(cached, "user-1"), (SearchParams(query="fuel"), "user-1")])

        assert [params.query for params, _ in missing] == ["fuel"]

    def test_cache_entry_touch(self):
        """Test cache entry touch updates stats."""
        entry = CacheEntry(query="coffee", user_id="user-1", data=RESPONSE, timestamp=100.0, ttl=10)

        assert entry.access_count == 1
        assert entry.last_accessed == 100.0

        entry.touch(105.0)

        assert entry.access_count == 2
        assert entry.last_accessed == 105.0
        assert entry.is_expired(111.0) is True


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
