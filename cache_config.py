from dataclasses import dataclass, field
from typing import Literal, Tuple

BACKEND_BASE_URL = "http://localhost:54321"

UNIFIED_SEARCH_FUNCTION = "unified-search"

# Prefixes of persisted cache entries in key-value storage
SEARCH_CACHE_PREFIX = "search_cache_"
CONVERSATION_CACHE_PREFIX = "conv_cache_"
CONVERSATIONS_STORAGE_KEY = "chat_conversations"

# Time-relative vocabulary that must never be answered from a stale cache
TEMPORAL_TERMS: Tuple[str, ...] = (
    "today",
    "yesterday",
    "this week",
    "this month",
    "recent",
    "latest",
    "last",
    "current",
    "now",
)

SearchStatus = Literal["idle", "processing", "completed", "cached", "error"]

ONE_HOUR = 60 * 60
ONE_DAY = 24 * ONE_HOUR


@dataclass
class CacheConfig:
    """Search cache configuration model.

    Attributes:
        memory_ttl_seconds: Lifetime of an entry in the in-memory tier
        persistent_ttl_seconds: Lifetime of an entry in persisted storage
        max_memory_entries: Maximum number of entries kept in memory
        max_memory_size_mb: Memory budget for cached payloads (megabytes)
        compression_threshold: Persisted payloads larger than this many bytes
            are stored zlib-compressed
        bypass_temporal_queries: Never serve or store results for queries
            with time-relative phrasing ("today", "last month", ...)
        retention_seconds: Age after which conversation caches and persisted
            entries are purged by the cleanup sweep
        cleanup_interval_seconds: Period of the cleanup sweep
        temporal_sweep_interval_seconds: Period of the temporal-query sweep
        temporal_sweep_start_hour: First local hour (inclusive) in which the
            temporal sweep runs
        temporal_sweep_end_hour: Local hour (exclusive) at which the temporal
            sweep stops running
        max_conversations: Maximum number of stored conversations
        search_timeout_seconds: HTTP timeout for the unified search endpoint
        search_max_retries: Attempts made against the search endpoint

    Example:
        >>> config = CacheConfig(
        ...     memory_ttl_seconds=180,
        ...     persistent_ttl_seconds=900,
        ...     max_memory_entries=150,
        ...     max_memory_size_mb=75.0,
        ...     retention_seconds=86400,
        ... )
    """
    memory_ttl_seconds: float = field(default=3 * 60)
    persistent_ttl_seconds: float = field(default=15 * 60)
    max_memory_entries: int = field(default=150)
    max_memory_size_mb: float = field(default=75.0)
    compression_threshold: int = field(default=5120)
    bypass_temporal_queries: bool = field(default=True)
    retention_seconds: float = field(default=ONE_DAY)
    cleanup_interval_seconds: float = field(default=ONE_HOUR)
    temporal_sweep_interval_seconds: float = field(default=5 * 60)
    temporal_sweep_start_hour: int = field(default=6)
    temporal_sweep_end_hour: int = field(default=23)
    max_conversations: int = field(default=50)
    search_timeout_seconds: float = field(default=15.0)
    search_max_retries: int = field(default=2)

CACHE_CONFIG_DEFAULT = CacheConfig()


# Presets for different deployments
CACHE_CONFIG_FAST = CacheConfig(
    memory_ttl_seconds=60,            # Short-lived memory entries
    persistent_ttl_seconds=5 * 60,    # Persisted entries expire quickly
    max_memory_entries=50,            # Smaller cache for memory efficiency
    max_memory_size_mb=25.0,
    cleanup_interval_seconds=30 * 60, # Sweep twice as often
    search_timeout_seconds=8.0,
    search_max_retries=1,             # Fail fast
)

CACHE_CONFIG_CONSERVATIVE = CacheConfig(
    memory_ttl_seconds=10 * 60,       # Longer memory lifetime
    persistent_ttl_seconds=60 * 60,   # 1 hour persisted lifetime
    max_memory_entries=300,           # Larger cache for a better hit rate
    max_memory_size_mb=150.0,
    search_timeout_seconds=30.0,
    search_max_retries=3,
)
