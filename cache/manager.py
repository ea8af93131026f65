"""Cache invalidation manager.

Translates receipt mutation events and elapsed time into invalidation
commands against the search cache, the conversation store and persisted
cache entries. The manager is an explicit service object: the application
constructs one at startup, passes it to upload/delete/edit workflows, and
owns its lifecycle through ``initialize()`` and ``shutdown()``.

Every public method is best-effort. A failing collaborator is logged and
skipped so that invalidation never fails the caller's primary action;
a missed invalidation is corrected by the next retention sweep.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Optional, Sequence

from cache.cache import SearchCache
from cache.scheduler import CacheMaintenanceScheduler
from cache_config import (
    CACHE_CONFIG_DEFAULT,
    CONVERSATION_CACHE_PREFIX,
    SEARCH_CACHE_PREFIX,
    TEMPORAL_TERMS,
    CacheConfig,
)
from storage import KeyValueStorage
from utils import age_seconds, parse_timestamp

if TYPE_CHECKING:
    from conversations.store import ConversationStore

logger = logging.getLogger(__name__)


@dataclass
class CacheHealth:
    """Snapshot of cache health.

    Attributes:
        memory_usage: Memory tier payload size in megabytes
        entry_count: Number of entries in the memory tier
        conversations_with_cache: Conversations holding cached search results
        total_conversations: Number of stored conversations
    """
    memory_usage: float = 0.0
    entry_count: int = 0
    conversations_with_cache: int = 0
    total_conversations: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memory_usage": self.memory_usage,
            "entry_count": self.entry_count,
            "conversations_with_cache": self.conversations_with_cache,
            "total_conversations": self.total_conversations,
        }


@dataclass
class CleanupReport:
    """Outcome of one retention sweep."""
    conversations_invalidated: int = 0
    expired_entries_removed: int = 0
    corrupt_entries_removed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "conversations_invalidated": self.conversations_invalidated,
            "expired_entries_removed": self.expired_entries_removed,
            "corrupt_entries_removed": self.corrupt_entries_removed,
        }


class CacheManager:
    """Coordinates search cache invalidation for receipt mutations.

    The manager keeps no cache state of its own. Receipt uploads, deletions
    and modifications all trigger a conservative full-user invalidation:
    cached result sets are not indexed by the receipts they contain, so any
    of the user's cached searches may be stale.

    Example:
        >>> manager = CacheManager(search_cache, conversation_store, storage)
        >>> await manager.initialize()
        >>> manager.invalidate_on_receipt_upload("user-1")
        >>> manager.get_cache_stats().to_dict()
        {'memory_usage': 0.0, 'entry_count': 0, ...}
        >>> await manager.shutdown()
    """

    def __init__(
        self,
        search_cache: SearchCache,
        conversation_store: "ConversationStore",
        storage: Optional[KeyValueStorage] = None,
        config: CacheConfig = CACHE_CONFIG_DEFAULT,
        clock: Callable[[], float] = time.time,
        temporal_terms: Sequence[str] = TEMPORAL_TERMS,
    ):
        """Initialize the cache manager.

        Args:
            search_cache: Key-value search cache to invalidate
            conversation_store: Store of chat search conversations
            storage: Persisted storage swept for expired cache entries.
                If None, only conversations are swept.
            config: Retention window and sweep schedule
            clock: Source of the current epoch time in seconds
            temporal_terms: Time-relative vocabulary invalidated by the
                temporal sweep
        """
        self.search_cache = search_cache
        self.conversation_store = conversation_store
        self.storage = storage
        self.config = config
        self.temporal_terms = tuple(temporal_terms)
        self._clock = clock
        self._scheduler: Optional[CacheMaintenanceScheduler] = None

    # ------------------------------------------------------------------
    # Event-driven invalidation
    # ------------------------------------------------------------------

    def invalidate_on_receipt_upload(self, user_id: str) -> None:
        """Invalidate caches after a receipt upload.

        New data may belong in any of the user's result sets, so every
        cached search scoped to the user and every conversation holding
        search results is invalidated. Idempotent.
        """
        logger.info("Receipt uploaded for user %s, invalidating search caches", user_id)
        self._invalidate_user_caches(user_id)

    def invalidate_on_receipt_deletion(self, receipt_ids: Iterable[str], user_id: str) -> None:
        """Invalidate caches after receipts were deleted."""
        receipt_ids = list(receipt_ids)
        logger.info(
            "%d receipt(s) deleted for user %s, invalidating search caches",
            len(receipt_ids),
            user_id,
        )
        logger.debug("Deleted receipt ids: %s", receipt_ids)
        self._invalidate_user_caches(user_id)

    def invalidate_on_receipt_modification(self, receipt_ids: Iterable[str], user_id: str) -> None:
        """Invalidate caches after receipts were edited."""
        receipt_ids = list(receipt_ids)
        logger.info(
            "%d receipt(s) modified for user %s, invalidating search caches",
            len(receipt_ids),
            user_id,
        )
        logger.debug("Modified receipt ids: %s", receipt_ids)
        self._invalidate_user_caches(user_id)

    def invalidate_temporal_queries(self, user_id: Optional[str] = None) -> None:
        """Invalidate cached searches phrased relative to the current time.

        Runs one pattern invalidation per temporal term for all users;
        ``user_id`` only identifies the caller in the logs.
        """
        logger.debug("Invalidating temporal queries (requested by %s)", user_id or "scheduler")
        for term in self.temporal_terms:
            try:
                self.search_cache.invalidate_by_pattern(term)
            except Exception:
                logger.exception("Failed to invalidate temporal term '%s'", term)

        try:
            self.search_cache.clear_temporal_conversation_cache()
        except Exception:
            logger.exception("Failed to clear temporal conversation caches")

    # ------------------------------------------------------------------
    # Time-driven invalidation
    # ------------------------------------------------------------------

    def perform_scheduled_cleanup(self) -> CleanupReport:
        """Purge conversation caches and persisted entries past the retention window.

        A conversation is invalidated iff ``now - cached_at`` exceeds the
        retention window. Persisted ``search_cache_``/``conv_cache_`` entries
        are removed when their ``timestamp``/``cachedAt`` age exceeds the same
        window, when they carry no timestamp, or when they cannot be parsed.

        Returns:
            CleanupReport with the number of items removed
        """
        now = self._clock()
        report = CleanupReport()

        for conversation in self._conversations():
            cache = conversation.search_results_cache
            if cache is None:
                continue
            if age_seconds(cache.cached_at, now) > self.config.retention_seconds:
                if self._invalidate_conversation(conversation.id):
                    report.conversations_invalidated += 1

        if self.storage is not None:
            for prefix in (SEARCH_CACHE_PREFIX, CONVERSATION_CACHE_PREFIX):
                try:
                    keys = self.storage.keys(prefix)
                except Exception:
                    logger.exception("Could not list persisted entries with prefix %s", prefix)
                    continue
                for key in keys:
                    self._sweep_persisted_entry(key, now, report)

        logger.info(
            "Cache cleanup: %d conversation(s) invalidated, %d expired and %d corrupt entries removed",
            report.conversations_invalidated,
            report.expired_entries_removed,
            report.corrupt_entries_removed,
        )
        return report

    def force_refresh_conversation(self, conversation_id: str) -> None:
        """Clear one conversation's cache regardless of age and reset it to idle."""
        logger.info("Force refreshing conversation %s", conversation_id)
        self._invalidate_conversation(conversation_id)
        try:
            self.conversation_store.update_conversation_search_status(conversation_id, "idle")
        except Exception:
            logger.exception("Failed to reset search status of conversation %s", conversation_id)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_cache_stats(self) -> CacheHealth:
        """Read-only snapshot of cache memory use and conversation caches."""
        health = CacheHealth()
        try:
            metrics = self.search_cache.get_metrics()
            health.memory_usage = metrics.memory_usage
            health.entry_count = metrics.entry_count
        except Exception:
            logger.exception("Failed to read search cache metrics")

        conversations = self._conversations()
        health.total_conversations = len(conversations)
        health.conversations_with_cache = sum(
            1 for conv in conversations if conv.search_results_cache is not None
        )
        return health

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self._scheduler is not None

    async def initialize(self) -> None:
        """Start the maintenance sweeps and run one cleanup immediately.

        Calling it again while initialized is a no-op.
        """
        if self._scheduler is not None:
            logger.debug("Cache manager already initialized")
            return

        self._scheduler = CacheMaintenanceScheduler(self, self.config, clock=self._clock)
        await self._scheduler.start()
        self.perform_scheduled_cleanup()
        logger.info("Cache manager initialized")

    async def shutdown(self) -> None:
        """Stop the maintenance sweeps."""
        if self._scheduler is None:
            return
        await self._scheduler.stop()
        self._scheduler = None
        logger.info("Cache manager stopped")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _conversations(self) -> list:
        try:
            return list(self.conversation_store.get_all_conversations())
        except Exception:
            logger.exception("Failed to load conversations")
            return []

    def _invalidate_user_caches(self, user_id: str) -> None:
        try:
            removed = self.search_cache.invalidate_by_pattern(user_id)
            logger.debug("Invalidated %s search cache entries for user %s", removed, user_id)
        except Exception:
            logger.exception("Failed to invalidate search cache for user %s", user_id)

        invalidated = 0
        for conversation in self._conversations():
            if conversation.has_search_results or conversation.search_results_cache is not None:
                if self._invalidate_conversation(conversation.id):
                    invalidated += 1
        logger.debug("Invalidated %d conversation cache(s)", invalidated)

    def _invalidate_conversation(self, conversation_id: str) -> bool:
        ok = True
        try:
            self.search_cache.clear_conversation_cache(conversation_id)
        except Exception:
            logger.exception("Failed to clear cache entries of conversation %s", conversation_id)
            ok = False
        try:
            self.conversation_store.invalidate_conversation_search_cache(conversation_id)
        except Exception:
            logger.exception("Failed to invalidate conversation %s", conversation_id)
            ok = False
        return ok

    def _sweep_persisted_entry(self, key: str, now: float, report: CleanupReport) -> None:
        try:
            raw = self.storage.get_item(key)
        except Exception:
            logger.exception("Could not read persisted entry %s", key[:80])
            return
        if raw is None:
            return

        try:
            record = json.loads(raw)
            if not isinstance(record, dict):
                raise ValueError("entry is not a JSON object")
        except ValueError as e:
            logger.warning("Removing corrupt cache entry %s: %s", key[:80], e)
            if self._remove_persisted(key):
                report.corrupt_entries_removed += 1
            return

        raw_timestamp = record["timestamp"] if "timestamp" in record else record.get("cachedAt")
        timestamp = parse_timestamp(raw_timestamp)
        if timestamp is None or age_seconds(timestamp, now) > self.config.retention_seconds:
            if self._remove_persisted(key):
                report.expired_entries_removed += 1

    def _remove_persisted(self, key: str) -> bool:
        try:
            self.storage.remove_item(key)
            return True
        except Exception:
            logger.exception("Could not remove persisted entry %s", key[:80])
            return False
