"""Chat-style search conversations.

Persists conversation history and the search results cached on each
conversation, plus helpers used to list and group conversations.
"""

from conversations.models import (
    ChatMessage,
    ConversationMetadata,
    SearchResultCache,
    StoredConversation,
)
from conversations.store import ConversationStore
from conversations.history import (
    create_conversation_metadata,
    filter_conversations_by_time,
    format_relative_time,
    generate_conversation_id,
    generate_conversation_title,
    get_conversation_stats,
    group_conversations_by_time,
    search_conversations,
    sort_conversations,
)

__all__ = [
    "ChatMessage",
    "ConversationMetadata",
    "SearchResultCache",
    "StoredConversation",
    "ConversationStore",
    "create_conversation_metadata",
    "filter_conversations_by_time",
    "format_relative_time",
    "generate_conversation_id",
    "generate_conversation_title",
    "get_conversation_stats",
    "group_conversations_by_time",
    "search_conversations",
    "sort_conversations",
]
