"""Search result caching for receipt search.

Provides a two-tier (memory + persisted) cache for unified search
responses, the cache manager that invalidates it when receipts change,
and the background scheduler that runs its periodic sweeps.
"""

from cache.keys import SearchParams, is_temporal_query, make_cache_key
from cache.cache import SearchCache, CacheEntry, CacheMetrics
from cache.manager import CacheManager, CacheHealth, CleanupReport
from cache.scheduler import CacheMaintenanceScheduler

__all__ = [
    "SearchParams",
    "is_temporal_query",
    "make_cache_key",
    "SearchCache",
    "CacheEntry",
    "CacheMetrics",
    "CacheManager",
    "CacheHealth",
    "CleanupReport",
    "CacheMaintenanceScheduler",
]
