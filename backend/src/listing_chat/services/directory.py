"""Conversation directory.

Resolves the unique conversation for a pair of users and an optional listing,
creating it on first contact. Uniqueness is enforced by the datastore; losing
a creation race means returning the row that won.
"""

import logging

from chat_models import Conversation, ConversationSummary, UnreadCounts, normalize_pair
from listing_chat.config import settings
from listing_chat.db.base import Datastore
from listing_chat.errors import (
    ConversationConflict,
    ConversationNotFound,
    InvalidTarget,
    NotParticipant,
    TransientNetworkError,
)
from listing_chat.session import ChatSession

logger = logging.getLogger(__name__)


class ConversationDirectory:
    """Lookup-or-create for conversations, plus the user's conversation list."""

    def __init__(self, datastore: Datastore, session: ChatSession):
        self.datastore = datastore
        self.session = session

    async def ensure_conversation(self, other_id: str, listing_id: str | None = None) -> str:
        """Return the conversation id for (session user, other_id, listing_id).

        Args:
            other_id: The user to talk to
            listing_id: Listing the conversation is about, None for a direct thread

        Returns:
            The existing or newly created conversation id

        Raises:
            NotAuthenticated: If the session has no verified user
            InvalidTarget: If other_id is missing or is the caller

        """
        self_id = self.session.require_user()
        if not other_id or other_id == self_id:
            raise InvalidTarget()
        listing_id = listing_id or None

        user_a, user_b = normalize_pair(self_id, other_id)
        existing = await self.datastore.find_conversation(user_a, user_b, listing_id)
        if existing:
            return existing.id

        try:
            created = await self.datastore.insert_conversation(
                Conversation(
                    participant_a_id=self_id,
                    participant_b_id=other_id,
                    listing_id=listing_id,
                )
            )
        except ConversationConflict:
            logger.info(
                f"Lost creation race for {user_a}/{user_b} listing={listing_id}, using existing"
            )
            winner = await self.datastore.find_conversation(user_a, user_b, listing_id)
            if winner is None:
                raise TransientNetworkError("Conversation conflict but no row visible yet")
            return winner.id

        logger.info(
            f"Created conversation {created.id} between {self_id} and {other_id} "
            f"(listing={listing_id})"
        )
        return created.id

    async def get_conversation(self, conversation_id: str) -> Conversation:
        """Get a conversation the session user participates in."""
        user_id = self.session.require_user()
        conversation = await self.datastore.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFound()
        if not conversation.has_participant(user_id):
            raise NotParticipant()
        return conversation

    async def list_conversations(
        self,
        unread: UnreadCounts | None = None,
        limit: int | None = None,
    ) -> list[ConversationSummary]:
        """The session user's conversations, most recently active first."""
        user_id = self.session.require_user()
        conversations = await self.datastore.list_conversations(
            user_id, limit or settings.conversation_list_limit
        )
        last_messages = await self.datastore.get_last_messages([c.id for c in conversations])

        summaries = [
            ConversationSummary(
                conversation=conversation,
                other_participant_id=conversation.other_participant(user_id),
                last_message=last_messages.get(conversation.id),
                unread_count=unread.get(conversation.id) if unread else 0,
            )
            for conversation in conversations
        ]
        summaries.sort(key=lambda s: s.updated_at, reverse=True)
        return summaries
