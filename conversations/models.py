"""Conversation data models.

Conversations are persisted as JSON; every model converts to and from the
camelCase record layout used by the stored conversation list.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from cache_config import SearchStatus
from utils import parse_timestamp

logger = logging.getLogger(__name__)

SEARCH_STATUSES = ("idle", "processing", "completed", "cached", "error")


def _to_datetime(value: Any) -> datetime:
    """Parse a stored timestamp into a naive local datetime.

    Offset-carrying values (e.g. "2025-01-01T00:00:00Z") are converted to
    local time so that every parsed timestamp stays comparable.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value)
    elif isinstance(value, str) and value:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _to_cached_at(value: Any) -> float:
    cached_at = parse_timestamp(value)
    if cached_at is None:
        raise ValueError(f"Invalid cachedAt: {value!r}")
    return cached_at


@dataclass
class ChatMessage:
    """Single chat message in a search conversation."""
    id: str
    type: str
    content: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(
            id=data["id"],
            type=data.get("type", "user"),
            content=data.get("content", ""),
            timestamp=_to_datetime(data.get("timestamp") or datetime.now()),
        )


@dataclass
class SearchResultCache:
    """Search results cached on a conversation.

    Attributes:
        search_params: Request parameters the results answer
        results: Cached search response
        cached_at: When the results were cached (epoch seconds)
        is_valid: False once the cache has been marked stale
    """
    search_params: Dict[str, Any]
    results: Dict[str, Any]
    cached_at: float
    is_valid: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "searchParams": self.search_params,
            "results": self.results,
            "cachedAt": self.cached_at,
            "isValid": self.is_valid,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchResultCache":
        return cls(
            search_params=dict(data.get("searchParams") or {}),
            results=dict(data.get("results") or {}),
            cached_at=_to_cached_at(data.get("cachedAt")),
            is_valid=bool(data.get("isValid", True)),
        )


@dataclass
class ConversationMetadata:
    """Conversation summary with search cache bookkeeping.

    Attributes:
        id: Conversation identifier
        title: Display title derived from the first user message
        timestamp: Last update time
        message_count: Number of messages in the conversation
        last_message: Truncated last message
        first_user_message: First message typed by the user
        has_search_results: Whether search results are cached
        last_search_query: Query of the cached search
        search_results_cache: Cached results, absent when invalidated
        search_status: Search lifecycle state
    """
    id: str
    title: str
    timestamp: datetime = field(default_factory=datetime.now)
    message_count: int = 0
    last_message: Optional[str] = None
    first_user_message: Optional[str] = None
    has_search_results: bool = False
    last_search_query: Optional[str] = None
    search_results_cache: Optional[SearchResultCache] = None
    search_status: SearchStatus = "idle"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "timestamp": self.timestamp.isoformat(),
            "messageCount": self.message_count,
            "lastMessage": self.last_message,
            "firstUserMessage": self.first_user_message,
            "hasSearchResults": self.has_search_results,
            "lastSearchQuery": self.last_search_query,
            "searchResultsCache": (
                self.search_results_cache.to_dict() if self.search_results_cache else None
            ),
            "searchStatus": self.search_status,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationMetadata":
        search_results_cache = None
        has_search_results = bool(data.get("hasSearchResults", False))
        cache_data = data.get("searchResultsCache")
        if cache_data:
            try:
                search_results_cache = SearchResultCache.from_dict(cache_data)
            except (AttributeError, TypeError, ValueError) as e:
                logger.warning(
                    "Dropping unreadable search cache of conversation %s: %s", data.get("id"), e
                )
                has_search_results = False

        status = data.get("searchStatus") or "idle"
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            timestamp=_to_datetime(data.get("timestamp") or datetime.now()),
            message_count=int(data.get("messageCount", 0)),
            last_message=data.get("lastMessage"),
            first_user_message=data.get("firstUserMessage"),
            has_search_results=has_search_results,
            last_search_query=data.get("lastSearchQuery"),
            search_results_cache=search_results_cache,
            search_status=status if status in SEARCH_STATUSES else "idle",
        )


@dataclass
class StoredConversation:
    """A conversation with its messages, as persisted."""
    metadata: ConversationMetadata
    messages: List[ChatMessage] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.metadata.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metadata": self.metadata.to_dict(),
            "messages": [message.to_dict() for message in self.messages],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoredConversation":
        return cls(
            metadata=ConversationMetadata.from_dict(data["metadata"]),
            messages=[ChatMessage.from_dict(m) for m in data.get("messages") or []],
        )
