"""Shared Pydantic models for listing chat."""

from chat_models.conversation import (
    Conversation,
    ConversationSummary,
    Message,
    normalize_pair,
)
from chat_models.events import (
    ChangeEvent,
    ChangeType,
    Collection,
    SessionEventType,
    SessionNotice,
)
from chat_models.unread import UnreadCounts

__all__ = [
    # Conversations
    "Conversation",
    "ConversationSummary",
    "Message",
    "normalize_pair",
    # Realtime
    "ChangeEvent",
    "ChangeType",
    "Collection",
    "SessionEventType",
    "SessionNotice",
    # Unread
    "UnreadCounts",
]
