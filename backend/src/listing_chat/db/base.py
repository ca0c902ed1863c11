"""Datastore contract the messaging services are written against."""

from abc import ABC, abstractmethod
from datetime import datetime

from chat_models import Conversation, Message
from listing_chat.realtime import ChangeFeed, FeedFilter, Subscription


class Datastore(ABC):
    """Query/insert/update primitives over conversations and messages plus a change feed."""

    feed: ChangeFeed

    async def connect(self):
        """Open connections (no-op by default)."""

    async def disconnect(self):
        """Close connections (no-op by default)."""

    async def subscribe(self, filters: list[FeedFilter]) -> Subscription:
        """Subscribe to row changes matching any of the filters."""
        return await self.feed.subscribe(filters)

    # ============= Conversations =============

    @abstractmethod
    async def find_conversation(
        self, user_a: str, user_b: str, listing_id: str | None
    ) -> Conversation | None:
        """Find the conversation for a pair (either stored order) and listing."""

    @abstractmethod
    async def insert_conversation(self, conversation: Conversation) -> Conversation:
        """Insert a conversation.

        Raises:
            ConversationConflict: If the pair + listing already has a conversation

        """

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Get a conversation by ID."""

    @abstractmethod
    async def list_conversations(self, user_id: str, limit: int = 50) -> list[Conversation]:
        """Conversations the user participates in, most recently active first."""

    # ============= Messages =============

    @abstractmethod
    async def insert_message(self, message: Message) -> Message:
        """Insert a message and bump its conversation's updated_at to created_at."""

    @abstractmethod
    async def find_message_by_token(
        self, conversation_id: str, sender_id: str, client_token: str
    ) -> Message | None:
        """Find a previously sent message by its idempotency token."""

    @abstractmethod
    async def get_messages(
        self,
        conversation_id: str,
        before: datetime | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        """Messages ordered by created_at ascending.

        With limit, the newest `limit` messages older than `before`.
        """

    @abstractmethod
    async def get_last_messages(self, conversation_ids: list[str]) -> dict[str, Message]:
        """Latest message per conversation."""

    @abstractmethod
    async def unread_conversation_ids(self, user_id: str) -> list[str]:
        """conversation_id of every unread message addressed to the user."""

    @abstractmethod
    async def mark_conversation_read(self, conversation_id: str, user_id: str) -> int:
        """Mark the user's unread messages in a conversation read. Returns rows changed."""

    @abstractmethod
    async def mark_message_read(self, message_id: str, user_id: str) -> bool:
        """Mark one message read if user_id is its recipient. Returns whether it changed."""
