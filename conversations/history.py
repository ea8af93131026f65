"""Conversation history helpers: ids, titles, and sidebar grouping."""

import random
import string
import time
from datetime import datetime, timedelta
from typing import Dict, List, Literal, Optional

from conversations.models import ChatMessage, ConversationMetadata

SortOrder = Literal["recent", "oldest", "title", "messageCount"]
TimeFilter = Literal["all", "today", "yesterday", "week", "month"]


def generate_conversation_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"conv_{int(time.time() * 1000)}_{suffix}"


def generate_conversation_title(first_user_message: str) -> str:
    """Derive a title of at most 40 characters from the first user message.

    Longer messages are cut at a word boundary when one falls after the
    20th character, and end with an ellipsis.
    """
    cleaned = first_user_message.strip()
    if len(cleaned) <= 40:
        return cleaned

    truncated = cleaned[:37]
    last_space = truncated.rfind(" ")
    if last_space > 20:
        return truncated[:last_space] + "..."
    return truncated + "..."


def create_conversation_metadata(conversation_id: str, messages: List[ChatMessage]) -> ConversationMetadata:
    user_messages = [message for message in messages if message.type == "user"]
    first_user_message = user_messages[0].content if user_messages else ""
    last_message = messages[-1].content if messages else ""
    if len(last_message) > 100:
        last_message = last_message[:97] + "..."

    return ConversationMetadata(
        id=conversation_id,
        title=generate_conversation_title(first_user_message),
        timestamp=datetime.now(),
        message_count=len(messages),
        last_message=last_message,
        first_user_message=first_user_message,
    )


def format_relative_time(date: datetime, now: Optional[datetime] = None) -> str:
    """Format a timestamp relative to now ("Today", "3 days ago", ...)."""
    now = now or datetime.now()
    hours = (now - date).total_seconds() / 3600
    days = hours / 24

    if hours < 1:
        return "Just now"
    if hours < 24:
        return "Today"
    if days < 2:
        return "Yesterday"
    if days < 7:
        return f"{int(days)} days ago"
    if days < 30:
        weeks = int(days / 7)
        return f"{weeks} week{'' if weeks == 1 else 's'} ago"
    if days < 365:
        months = int(days / 30)
        return f"{months} month{'' if months == 1 else 's'} ago"
    years = int(days / 365)
    return f"{years} year{'' if years == 1 else 's'} ago"


def search_conversations(conversations: List[ConversationMetadata], query: str) -> List[ConversationMetadata]:
    """Filter conversations whose title or messages contain ``query``."""
    term = query.strip().lower()
    if not term:
        return conversations

    return [
        conv for conv in conversations
        if term in conv.title.lower()
        or term in (conv.last_message or "").lower()
        or term in (conv.first_user_message or "").lower()
    ]


def filter_conversations_by_time(
    conversations: List[ConversationMetadata],
    time_filter: TimeFilter,
    now: Optional[datetime] = None,
) -> List[ConversationMetadata]:
    if time_filter == "all":
        return conversations

    now = now or datetime.now()
    start_of_today = datetime(now.year, now.month, now.day)
    start_of_yesterday = start_of_today - timedelta(days=1)
    start_of_week = start_of_today - timedelta(days=7)
    start_of_month = start_of_today - timedelta(days=30)

    if time_filter == "today":
        return [conv for conv in conversations if conv.timestamp >= start_of_today]
    if time_filter == "yesterday":
        return [
            conv for conv in conversations
            if start_of_yesterday <= conv.timestamp < start_of_today
        ]
    if time_filter == "week":
        return [conv for conv in conversations if conv.timestamp >= start_of_week]
    if time_filter == "month":
        return [conv for conv in conversations if conv.timestamp >= start_of_month]
    return conversations


def sort_conversations(conversations: List[ConversationMetadata], sort_by: SortOrder) -> List[ConversationMetadata]:
    if sort_by == "oldest":
        return sorted(conversations, key=lambda conv: conv.timestamp)
    if sort_by == "title":
        return sorted(conversations, key=lambda conv: conv.title.lower())
    if sort_by == "messageCount":
        return sorted(conversations, key=lambda conv: conv.message_count, reverse=True)
    return sorted(conversations, key=lambda conv: conv.timestamp, reverse=True)


def get_conversation_stats(
    conversations: List[ConversationMetadata], now: Optional[datetime] = None
) -> Dict[str, int]:
    now = now or datetime.now()
    start_of_today = datetime(now.year, now.month, now.day)
    start_of_week = start_of_today - timedelta(days=7)

    return {
        "total": len(conversations),
        "today": sum(1 for conv in conversations if conv.timestamp >= start_of_today),
        "this_week": sum(1 for conv in conversations if conv.timestamp >= start_of_week),
        "total_messages": sum(conv.message_count for conv in conversations),
    }


def group_conversations_by_time(
    conversations: List[ConversationMetadata], now: Optional[datetime] = None
) -> Dict[str, List[ConversationMetadata]]:
    """Group conversations into sidebar sections (Today, Yesterday, ...)."""
    groups: Dict[str, List[ConversationMetadata]] = {}
    for conv in conversations:
        relative = format_relative_time(conv.timestamp, now)
        if relative in ("Just now", "Today"):
            group = "Today"
        elif relative == "Yesterday":
            group = "Yesterday"
        elif "days ago" in relative:
            group = "This week"
        elif "week" in relative:
            group = "Earlier"
        else:
            group = "Older"
        groups.setdefault(group, []).append(conv)
    return groups
