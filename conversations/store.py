"""Persisted conversation store.

All conversations live in a single JSON list under one storage key,
newest first, capped at ``max_conversations``.
"""

import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from cache.keys import SearchParams
from cache_config import CONVERSATIONS_STORAGE_KEY, ONE_DAY, SearchStatus
from conversations.models import (
    SEARCH_STATUSES,
    ConversationMetadata,
    SearchResultCache,
    StoredConversation,
)
from storage import KeyValueStorage, StorageError
from utils import age_seconds

logger = logging.getLogger(__name__)


class ConversationStore:
    """Conversation history with per-conversation search result caches.

    Every operation on an unknown conversation id is a logged no-op.
    Storage failures are logged and degrade to an empty or unchanged
    history; they never propagate to the caller.

    Example:
        >>> store = ConversationStore(MemoryStorage())
        >>> store.save_conversation(conversation)
        >>> store.update_conversation_search_cache(conversation.id, params, response)
        >>> store.get_conversation_search_cache(conversation.id).is_valid
        True
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        clock: Callable[[], float] = time.time,
        max_conversations: int = 50,
        max_cache_age_seconds: float = ONE_DAY,
        storage_key: str = CONVERSATIONS_STORAGE_KEY,
    ):
        """Initialize the conversation store.

        Args:
            storage: Backing key-value storage
            clock: Source of the current epoch time in seconds
            max_conversations: Maximum number of conversations kept
            max_cache_age_seconds: Age after which a cached search result
                is considered stale
            storage_key: Storage key holding the conversation list

        Raises:
            ValueError: If max_conversations is less than 1
        """
        if max_conversations < 1:
            raise ValueError("max_conversations must be at least 1")

        self.storage = storage
        self.max_conversations = max_conversations
        self.max_cache_age_seconds = max_cache_age_seconds
        self.storage_key = storage_key
        self._clock = clock

    def _load(self) -> List[StoredConversation]:
        try:
            raw = self.storage.get_item(self.storage_key)
        except StorageError as e:
            logger.error("Error loading conversations: %s", e)
            return []
        if not raw:
            return []

        try:
            records = json.loads(raw)
        except ValueError as e:
            logger.error("Stored conversations are not valid JSON: %s", e)
            return []
        if not isinstance(records, list):
            logger.error("Stored conversations are not a list")
            return []

        conversations = []
        for record in records:
            try:
                conversations.append(StoredConversation.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable conversation record: %s", e)
        return conversations

    def _save_all(self, conversations: List[StoredConversation]) -> bool:
        try:
            self.storage.set_item(
                self.storage_key,
                json.dumps([conv.to_dict() for conv in conversations], default=str),
            )
            return True
        except StorageError as e:
            logger.error("Error saving conversations: %s", e)
            return False

    def get_all_conversations(self) -> List[ConversationMetadata]:
        """Get metadata of all conversations, newest first."""
        conversations = [conv.metadata for conv in self._load()]
        return sorted(conversations, key=lambda meta: meta.timestamp, reverse=True)

    def get_conversation(self, conversation_id: str) -> Optional[StoredConversation]:
        for conv in self._load():
            if conv.id == conversation_id:
                return conv
        return None

    def save_conversation(self, conversation: StoredConversation) -> None:
        """Save or update a conversation, keeping the newest first."""
        conversations = [conv for conv in self._load() if conv.id != conversation.id]
        conversations.insert(0, conversation)
        self._save_all(conversations[:self.max_conversations])

    def delete_conversation(self, conversation_id: str) -> None:
        conversations = self._load()
        remaining = [conv for conv in conversations if conv.id != conversation_id]
        if len(remaining) != len(conversations):
            self._save_all(remaining)

    def update_conversation_search_cache(
        self,
        conversation_id: str,
        params: SearchParams,
        results: Dict[str, Any],
        status: SearchStatus = "completed",
    ) -> None:
        """Attach fresh search results to a conversation."""
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            logger.warning("Conversation %s not found for search cache update", conversation_id)
            return

        metadata = conversation.metadata
        metadata.has_search_results = True
        metadata.last_search_query = params.query
        metadata.search_status = status
        metadata.search_results_cache = SearchResultCache(
            search_params=params.to_dict(),
            results=results,
            cached_at=self._clock(),
            is_valid=True,
        )
        self.save_conversation(conversation)
        logger.debug("Updated search cache for conversation %s with status: %s", conversation_id, status)

    def get_conversation_search_cache(self, conversation_id: str) -> Optional[SearchResultCache]:
        """Get cached search results, invalidating them if stale."""
        conversation = self.get_conversation(conversation_id)
        if conversation is None or conversation.metadata.search_results_cache is None:
            return None

        cache = conversation.metadata.search_results_cache
        expired = age_seconds(cache.cached_at, self._clock()) > self.max_cache_age_seconds
        if expired or not cache.is_valid:
            self.invalidate_conversation_search_cache(conversation_id)
            return None
        return cache

    def has_valid_search_cache(self, conversation_id: str) -> bool:
        return self.get_conversation_search_cache(conversation_id) is not None

    def invalidate_conversation_search_cache(self, conversation_id: str) -> bool:
        """Drop a conversation's cached search results and reset its status.

        Returns:
            True if the conversation exists
        """
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            return False

        metadata = conversation.metadata
        metadata.has_search_results = False
        metadata.search_results_cache = None
        metadata.search_status = "idle"
        self.save_conversation(conversation)
        logger.debug("Invalidated search cache for conversation %s", conversation_id)
        return True

    def update_conversation_search_status(self, conversation_id: str, status: SearchStatus) -> None:
        """Set the search status of a conversation.

        Raises:
            ValueError: If status is not a known search status
        """
        if status not in SEARCH_STATUSES:
            raise ValueError(f"Unknown search status: {status}")

        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            return

        conversation.metadata.search_status = status
        self.save_conversation(conversation)
        logger.debug("Updated search status for conversation %s: %s", conversation_id, status)

    def force_invalidate_conversations_by_query(self, query: str) -> int:
        """Invalidate every conversation whose cached query or messages mention ``query``.

        Returns:
            Number of conversations invalidated
        """
        query_lower = query.lower()
        cleared = 0
        for conv in self._load():
            in_cache = query_lower in (conv.metadata.last_search_query or "").lower()
            in_messages = any(query_lower in message.content.lower() for message in conv.messages)
            if in_cache or in_messages:
                self.invalidate_conversation_search_cache(conv.id)
                cleared += 1

        logger.info("Force invalidated %d conversation caches for query: %s", cleared, query)
        return cleared

    def force_invalidate_all_conversation_caches(self) -> int:
        """Invalidate the search cache of every conversation that has one.

        Returns:
            Number of conversations invalidated
        """
        cleared = 0
        for metadata in self.get_all_conversations():
            if metadata.has_search_results:
                self.invalidate_conversation_search_cache(metadata.id)
                cleared += 1

        logger.info("Invalidated %d conversation search caches", cleared)
        return cleared

    def export_conversations(self) -> str:
        """Export all conversations as pretty-printed JSON for backup."""
        return json.dumps([conv.to_dict() for conv in self._load()], indent=2, default=str)

    def import_conversations(self, json_data: str) -> bool:
        """Replace the stored conversations with a JSON backup.

        Returns:
            True if the backup was valid and stored
        """
        try:
            records = json.loads(json_data)
            if not isinstance(records, list):
                raise ValueError("Invalid data format")
            conversations = []
            for record in records:
                if not isinstance(record, dict) or not record.get("metadata") or "messages" not in record:
                    raise ValueError("Invalid conversation structure")
                if not record["metadata"].get("id"):
                    raise ValueError("Invalid conversation structure")
                conversations.append(StoredConversation.from_dict(record))
        except (KeyError, TypeError, ValueError) as e:
            logger.error("Error importing conversations: %s", e)
            return False

        return self._save_all(conversations[:self.max_conversations])
