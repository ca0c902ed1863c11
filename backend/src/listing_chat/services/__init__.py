"""Messaging components."""

from listing_chat.services.active import ActiveConversation
from listing_chat.services.directory import ConversationDirectory
from listing_chat.services.live_listener import ListenerState, LiveUpdateListener
from listing_chat.services.message_store import MessageStore
from listing_chat.services.unread import UnreadTracker

__all__ = [
    "ActiveConversation",
    "ConversationDirectory",
    "ListenerState",
    "LiveUpdateListener",
    "MessageStore",
    "UnreadTracker",
]
