"""Two-tier search result cache.

This module provides an in-memory LRU cache for unified search responses,
backed by persisted key-value storage with a longer TTL, plus
conversation-scoped entries used to restore chat search sessions.
"""

import base64
import json
import logging
import threading
import time
import zlib
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from cache.keys import SearchParams, is_temporal_query, make_cache_key
from cache_config import (
    CACHE_CONFIG_DEFAULT,
    CONVERSATION_CACHE_PREFIX,
    SEARCH_CACHE_PREFIX,
    CacheConfig,
)
from storage import KeyValueStorage, StorageError, StorageQuotaExceededError
from utils import BYTES_PER_MB, format_size, parse_timestamp, payload_size_bytes

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Single in-memory cache entry containing a search response and metadata.

    Attributes:
        query: The original search query
        user_id: Owner of the cached response
        data: Cached search response
        timestamp: When the entry was created (epoch seconds)
        ttl: Lifetime of the entry in seconds
        access_count: Number of times this entry was served
        last_accessed: Timestamp of last access
        size_mb: Serialized payload size in megabytes
        compressed: Whether the persisted copy is compressed
    """
    query: str
    user_id: str
    data: Dict[str, Any]
    timestamp: float
    ttl: float
    access_count: int = field(default=1)
    last_accessed: float = field(default=0.0)
    size_mb: float = field(default=0.0)
    compressed: bool = field(default=False)

    def __post_init__(self) -> None:
        if not self.last_accessed:
            self.last_accessed = self.timestamp

    def touch(self, now: float) -> None:
        """Update access statistics when entry is served."""
        self.access_count += 1
        self.last_accessed = now

    def is_expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


@dataclass
class CacheMetrics:
    """Cache statistics for monitoring and debugging.

    Attributes:
        hits: Number of cache hits (either tier)
        misses: Number of cache misses
        evictions: Number of entries evicted from memory
        compressions: Number of payloads persisted compressed
        total_requests: Total number of lookups
        average_response_time_ms: Mean lookup latency
        cache_efficiency: Hit rate as a percentage (0-100)
        memory_usage: Memory tier payload size in megabytes
        entry_count: Current number of memory entries
    """
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    compressions: int = 0
    total_requests: int = 0
    average_response_time_ms: float = 0.0
    cache_efficiency: float = 0.0
    memory_usage: float = 0.0
    entry_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to dictionary for JSON serialization."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "compressions": self.compressions,
            "total_requests": self.total_requests,
            "average_response_time_ms": round(self.average_response_time_ms, 3),
            "cache_efficiency": round(self.cache_efficiency, 2),
            "memory_usage": round(self.memory_usage, 6),
            "entry_count": self.entry_count,
        }


class SearchCache:
    """Two-tier cache for unified search responses.

    The memory tier is an LRU keyed by the search fingerprint with a short
    TTL and a size budget. When a storage backend is given, every entry is
    also persisted under ``search_cache_<key>`` with a longer TTL and
    promoted back into memory on a persisted hit.

    Queries with time-relative phrasing are never served from or written
    to the cache while ``config.bypass_temporal_queries`` is set.

    Example:
        >>> cache = SearchCache(storage=MemoryStorage())
        >>> params = SearchParams(query="coffee receipts", sources=["receipts"])
        >>> cache.set(params, "user-1", {"success": True, "results": [...]})
        >>> cache.get(params, "user-1")["success"]
        True
        >>> cache.invalidate_by_pattern("user-1")
        1
    """

    def __init__(
        self,
        storage: Optional[KeyValueStorage] = None,
        config: CacheConfig = CACHE_CONFIG_DEFAULT,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the search cache.

        Args:
            storage: Optional persisted storage for the second tier
            config: Cache configuration (TTLs, size budget, compression)
            clock: Source of the current epoch time in seconds
        """
        self.storage = storage
        self.config = config
        self._clock = clock

        # OrderedDict maintains insertion order - used for LRU
        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self._memory_usage_mb = 0.0

        # Statistics
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._compressions = 0
        self._total_requests = 0
        self._total_response_ms = 0.0

        logger.debug(
            "SearchCache initialized (max_entries=%d, max_size=%.1fMB, persistent=%s)",
            config.max_memory_entries,
            config.max_memory_size_mb,
            storage is not None,
        )

    # ------------------------------------------------------------------
    # Lookup and store
    # ------------------------------------------------------------------

    def get(self, params: SearchParams, user_id: str) -> Optional[Dict[str, Any]]:
        """Get a cached response if available and not expired.

        Args:
            params: Search parameters
            user_id: Owner of the cached response

        Returns:
            Cached response or None if not found, expired or temporal
        """
        start = time.perf_counter()

        if self.config.bypass_temporal_queries and is_temporal_query(params.query):
            logger.debug("Temporal query, bypassing cache: %s", params.query[:50])
            self._record_lookup(start, hit=False)
            return None

        key = make_cache_key(params, user_id)
        now = self._clock()

        with self._lock:
            entry = self._cache.get(key)
            if entry is not None:
                if not entry.is_expired(now):
                    self._cache.move_to_end(key)
                    entry.touch(now)
                    self._record_lookup(start, hit=True)
                    logger.debug(
                        "Cache hit for query: %s (%d accesses)",
                        params.query[:50],
                        entry.access_count,
                    )
                    return entry.data
                self._remove_memory_entry(key)

        data = self._read_persisted(key, now)
        if data is not None:
            self._store_in_memory(key, params, user_id, data, now)
            self._record_lookup(start, hit=True)
            logger.debug("Persistent cache hit for query: %s", params.query[:50])
            return data

        self._record_lookup(start, hit=False)
        logger.debug("Cache miss for query: %s", params.query[:50])
        return None

    def set(self, params: SearchParams, user_id: str, response: Dict[str, Any]) -> None:
        """Store a search response in both cache tiers.

        Args:
            params: Search parameters the response answers
            user_id: Owner of the response
            response: Search response to cache
        """
        if self.config.bypass_temporal_queries and is_temporal_query(params.query):
            logger.debug("Temporal query, not caching: %s", params.query[:50])
            return

        key = make_cache_key(params, user_id)
        now = self._clock()
        size_bytes = payload_size_bytes(response)
        compressed = size_bytes > self.config.compression_threshold

        self._store_in_memory(key, params, user_id, response, now, size_bytes)
        if compressed:
            with self._lock:
                self._compressions += 1

        if self.storage is not None:
            record = self._encode_record(
                data=response,
                timestamp=now,
                ttl=self.config.persistent_ttl_seconds,
                size_bytes=size_bytes,
                compressed=compressed,
                query=params.query,
                user_id=user_id,
            )
            self._persist(SEARCH_CACHE_PREFIX + key, record)

        logger.debug(
            "Cached search results for query: %s (%s, compressed: %s)",
            params.query[:50],
            format_size(size_bytes),
            compressed,
        )

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate_by_pattern(self, pattern: Optional[str] = None) -> int:
        """Invalidate cache entries in both tiers.

        Args:
            pattern: If provided, only invalidate entries whose key or query
                contains this pattern (substring match, case-insensitive).
                If None, clear all search cache entries.

        Returns:
            Number of distinct cache keys invalidated
        """
        with self._lock:
            if pattern is None:
                removed = set(self._cache)
                self._cache.clear()
                self._memory_usage_mb = 0.0
            else:
                pattern_lower = pattern.lower()
                removed = {
                    key for key, entry in self._cache.items()
                    if pattern_lower in key.lower() or pattern_lower in entry.query.lower()
                }
                for key in removed:
                    self._remove_memory_entry(key)

        for storage_key in self._persisted_keys(SEARCH_CACHE_PREFIX):
            if pattern is None or pattern.lower() in storage_key.lower():
                self._remove_persisted(storage_key)
                removed.add(storage_key[len(SEARCH_CACHE_PREFIX):])

        if pattern is None:
            logger.info("Cleared all search cache: %d entries removed", len(removed))
        else:
            logger.info(
                "Cache invalidation: %d entries matching '%s' removed",
                len(removed),
                pattern,
            )
        return len(removed)

    def force_clear_query(self, query: str) -> int:
        """Remove every memory, search and conversation entry mentioning a query.

        Args:
            query: Query text (case-insensitive substring match on keys)

        Returns:
            Number of entries removed
        """
        query_lower = query.lower()
        with self._lock:
            memory_keys = [key for key in self._cache if query_lower in key.lower()]
            for key in memory_keys:
                self._remove_memory_entry(key)

        persisted_keys = [
            key
            for key in self._persisted_keys(SEARCH_CACHE_PREFIX) + self._persisted_keys(CONVERSATION_CACHE_PREFIX)
            if query_lower in key.lower()
        ]
        for key in persisted_keys:
            self._remove_persisted(key)

        count = len(memory_keys) + len(persisted_keys)
        logger.info("Force cleared %d cache entries for query: %s", count, query)
        return count

    def clear_old_entries(self, fraction: float = 0.25) -> int:
        """Drop the oldest persisted cache entries to free storage space.

        Entries that cannot be parsed are treated as the oldest.

        Args:
            fraction: Share of persisted cache entries to remove (at least one)

        Returns:
            Number of entries removed
        """
        keys = self._persisted_keys(SEARCH_CACHE_PREFIX) + self._persisted_keys(CONVERSATION_CACHE_PREFIX)
        if not keys:
            return 0

        key_timestamps: List[Tuple[float, str]] = []
        for key in keys:
            record = self._load_record(key)
            timestamp = 0.0
            if record is not None:
                timestamp = parse_timestamp(record.get("timestamp", record.get("cachedAt"))) or 0.0
            key_timestamps.append((timestamp, key))

        key_timestamps.sort()
        to_remove = max(1, int(len(key_timestamps) * fraction))
        for _, key in key_timestamps[:to_remove]:
            self._remove_persisted(key)

        logger.info("Cleared %d old cache entries to free up storage space", to_remove)
        return to_remove

    def clear_temporal_conversation_cache(self) -> int:
        """Remove conversation cache entries whose stored query is temporal.

        Entries that cannot be parsed are removed as well.

        Returns:
            Number of entries removed
        """
        cleared = 0
        for key in self._persisted_keys(CONVERSATION_CACHE_PREFIX):
            record = self._load_record(key)
            if record is None:
                self._remove_persisted(key)
                cleared += 1
                continue
            search_params = record.get("searchParams")
            if isinstance(search_params, dict) and is_temporal_query(str(search_params.get("query", ""))):
                self._remove_persisted(key)
                cleared += 1
                logger.debug("Cleared temporal conversation cache: %s", key[:80])

        logger.info("Cleared %d temporal conversation cache entries", cleared)
        return cleared

    # ------------------------------------------------------------------
    # Conversation-scoped entries
    # ------------------------------------------------------------------

    def get_conversation_cache_key(
        self, conversation_id: str, params: SearchParams, user_id: str
    ) -> str:
        return f"conv_{conversation_id}_{make_cache_key(params, user_id)}"

    def set_for_conversation(
        self,
        conversation_id: str,
        params: SearchParams,
        user_id: str,
        response: Dict[str, Any],
    ) -> None:
        """Store a response in the regular cache and under the conversation."""
        self.set(params, user_id, response)

        if self.storage is None:
            return
        if self.config.bypass_temporal_queries and is_temporal_query(params.query):
            return

        record = json.dumps({
            "conversationId": conversation_id,
            "searchParams": params.to_dict(),
            "results": response,
            "cachedAt": self._clock(),
            "userId": user_id,
        }, default=str)
        storage_key = CONVERSATION_CACHE_PREFIX + self.get_conversation_cache_key(
            conversation_id, params, user_id
        )
        self._persist(storage_key, record)
        logger.debug("Stored conversation-specific cache for %s", conversation_id)

    def get_for_conversation(
        self, conversation_id: str, params: SearchParams, user_id: str
    ) -> Optional[Dict[str, Any]]:
        """Get a response cached for a conversation, falling back to ``get``.

        Temporal queries skip the conversation tier while
        ``config.bypass_temporal_queries`` is set. Conversation entries
        older than the retention window or owned by another user are removed.
        """
        if self.config.bypass_temporal_queries and is_temporal_query(params.query):
            logger.debug("Temporal query, bypassing conversation cache for %s", conversation_id)
            return self.get(params, user_id)

        storage_key = CONVERSATION_CACHE_PREFIX + self.get_conversation_cache_key(
            conversation_id, params, user_id
        )
        record = self._load_record(storage_key) if self.storage is not None else None
        if record is not None:
            cached_at = parse_timestamp(record.get("cachedAt"))
            fresh = (
                cached_at is not None
                and self._clock() - cached_at <= self.config.retention_seconds
            )
            if fresh and record.get("userId") == user_id and isinstance(record.get("results"), dict):
                logger.debug("Found conversation cache for %s", conversation_id)
                return record["results"]
            self._remove_persisted(storage_key)
        elif self.storage is not None and self._read_raw(storage_key) is not None:
            self._remove_persisted(storage_key)

        return self.get(params, user_id)

    def clear_conversation_cache(self, conversation_id: str) -> int:
        """Remove all persisted entries cached for one conversation.

        Returns:
            Number of entries removed
        """
        prefix = f"{CONVERSATION_CACHE_PREFIX}conv_{conversation_id}_"
        keys = self._persisted_keys(prefix)
        for key in keys:
            self._remove_persisted(key)
        logger.debug("Cleared %d conversation cache entries for %s", len(keys), conversation_id)
        return len(keys)

    def has_conversation_cache(
        self, conversation_id: str, params: SearchParams, user_id: str
    ) -> bool:
        if self.storage is None:
            return False
        record = self._load_record(
            CONVERSATION_CACHE_PREFIX + self.get_conversation_cache_key(conversation_id, params, user_id)
        )
        if record is None:
            return False
        cached_at = parse_timestamp(record.get("cachedAt"))
        if cached_at is None:
            return False
        return (
            self._clock() - cached_at <= self.config.retention_seconds
            and record.get("userId") == user_id
        )

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_metrics(self) -> CacheMetrics:
        """Get current cache statistics.

        Returns:
            CacheMetrics object with current statistics
        """
        with self._lock:
            lookups = self._hits + self._misses
            return CacheMetrics(
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                compressions=self._compressions,
                total_requests=self._total_requests,
                average_response_time_ms=(
                    self._total_response_ms / self._total_requests if self._total_requests else 0.0
                ),
                cache_efficiency=(self._hits / lookups * 100) if lookups else 0.0,
                memory_usage=self._memory_usage_mb,
                entry_count=len(self._cache),
            )

    def warm_cache(self, queries: List[Tuple[SearchParams, str]]) -> List[Tuple[SearchParams, str]]:
        """Check popular queries against the cache.

        Args:
            queries: (params, user_id) pairs to check

        Returns:
            The pairs that are not cached and still need a backend search
        """
        logger.info("Warming cache with %d popular queries", len(queries))
        missing = [(params, user_id) for params, user_id in queries if self.get(params, user_id) is None]
        for params, _ in missing:
            logger.debug("Cache warming needed for: %s", params.query[:50])
        return missing

    def clear_stats(self) -> None:
        """Reset cache statistics (preserves entries)."""
        with self._lock:
            self._hits = 0
            self._misses = 0
            self._evictions = 0
            self._compressions = 0
            self._total_requests = 0
            self._total_response_ms = 0.0
            logger.debug("Cache statistics reset")

    def __len__(self) -> int:
        """Return current number of memory entries."""
        with self._lock:
            return len(self._cache)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record_lookup(self, start: float, hit: bool) -> None:
        with self._lock:
            self._total_requests += 1
            self._total_response_ms += (time.perf_counter() - start) * 1000
            if hit:
                self._hits += 1
            else:
                self._misses += 1

    def _store_in_memory(
        self,
        key: str,
        params: SearchParams,
        user_id: str,
        data: Dict[str, Any],
        now: float,
        size_bytes: Optional[int] = None,
    ) -> None:
        if size_bytes is None:
            size_bytes = payload_size_bytes(data)
        size_mb = size_bytes / BYTES_PER_MB

        with self._lock:
            if key in self._cache:
                self._remove_memory_entry(key)

            overflow_mb = self._memory_usage_mb + size_mb - self.config.max_memory_size_mb
            if overflow_mb > 0:
                self._evict_lru(overflow_mb)
            if len(self._cache) >= self.config.max_memory_entries:
                self._evict_lru(0.0)

            self._cache[key] = CacheEntry(
                query=params.query,
                user_id=user_id,
                data=data,
                timestamp=now,
                ttl=self.config.memory_ttl_seconds,
                size_mb=size_mb,
                compressed=size_bytes > self.config.compression_threshold,
            )
            self._memory_usage_mb += size_mb

    def _evict_lru(self, target_mb: float) -> None:
        """Evict least recently used entries until ``target_mb`` is freed.

        At least one entry is evicted when the cache is not empty.
        """
        freed = 0.0
        evicted = 0
        while self._cache and (evicted == 0 or freed < target_mb):
            key, entry = self._cache.popitem(last=False)
            self._memory_usage_mb -= entry.size_mb
            freed += entry.size_mb
            evicted += 1
            self._evictions += 1
            logger.debug(
                "Cache eviction: removed key %s (had %d accesses)",
                key[:50],
                entry.access_count,
            )
        if not self._cache:
            self._memory_usage_mb = 0.0

    def _remove_memory_entry(self, key: str) -> None:
        entry = self._cache.pop(key, None)
        if entry is not None:
            self._memory_usage_mb = max(0.0, self._memory_usage_mb - entry.size_mb)

    def _encode_record(
        self,
        data: Dict[str, Any],
        timestamp: float,
        ttl: float,
        size_bytes: int,
        compressed: bool,
        query: str,
        user_id: str,
    ) -> str:
        record: Dict[str, Any] = {
            "timestamp": timestamp,
            "ttl": ttl,
            "size": size_bytes,
            "compressed": compressed,
            "query": query,
            "userId": user_id,
        }
        if compressed:
            raw = json.dumps(data, default=str).encode("utf-8")
            record["data_z"] = base64.b64encode(zlib.compress(raw)).decode("ascii")
        else:
            record["data"] = data
        return json.dumps(record, default=str)

    @staticmethod
    def _decode_payload(record: Dict[str, Any]) -> Dict[str, Any]:
        if record.get("compressed"):
            raw = zlib.decompress(base64.b64decode(record["data_z"]))
            data = json.loads(raw.decode("utf-8"))
        else:
            data = record["data"]
        if not isinstance(data, dict):
            raise ValueError("cached payload is not an object")
        return data

    def _read_persisted(self, key: str, now: float) -> Optional[Dict[str, Any]]:
        if self.storage is None:
            return None

        storage_key = SEARCH_CACHE_PREFIX + key
        raw = self._read_raw(storage_key)
        if raw is None:
            return None

        try:
            record = json.loads(raw)
            timestamp = parse_timestamp(record["timestamp"])
            ttl = parse_timestamp(record["ttl"])
            if timestamp is None or ttl is None:
                raise ValueError("invalid timestamp or ttl")
            if now - timestamp > ttl:
                self._remove_persisted(storage_key)
                logger.debug("Persistent cache entry expired: %s", key[:50])
                return None
            return self._decode_payload(record)
        except (ValueError, KeyError, TypeError, zlib.error) as e:
            logger.warning("Dropping unreadable persistent cache entry %s: %s", key[:50], e)
            self._remove_persisted(storage_key)
            return None

    def _read_raw(self, storage_key: str) -> Optional[str]:
        try:
            return self.storage.get_item(storage_key)
        except StorageError as e:
            logger.warning("Persistent cache access failed: %s", e)
            return None

    def _load_record(self, storage_key: str) -> Optional[Dict[str, Any]]:
        """Read and parse a persisted JSON object; None if missing or corrupt."""
        raw = self._read_raw(storage_key)
        if raw is None:
            return None
        try:
            record = json.loads(raw)
        except ValueError:
            return None
        return record if isinstance(record, dict) else None

    def _persisted_keys(self, prefix: str) -> List[str]:
        if self.storage is None:
            return []
        try:
            return self.storage.keys(prefix)
        except StorageError as e:
            logger.warning("Could not list persisted cache keys: %s", e)
            return []

    def _persist(self, storage_key: str, record: str) -> None:
        try:
            self.storage.set_item(storage_key, record)
        except StorageQuotaExceededError:
            logger.info("Storage quota exceeded, clearing old cache entries")
            self.clear_old_entries()
            try:
                self.storage.set_item(storage_key, record)
                logger.info("Stored cache entry after cleanup")
            except StorageError as e:
                logger.error("Still failed to store cache entry after cleanup: %s", e)
        except StorageError as e:
            logger.warning("Failed to store in persistent cache: %s", e)

    def _remove_persisted(self, storage_key: str) -> None:
        try:
            self.storage.remove_item(storage_key)
        except StorageError as e:
            logger.warning("Failed to remove persisted entry %s: %s", storage_key[:80], e)
