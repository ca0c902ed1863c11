"""Append-only message log per conversation."""

import logging
from datetime import datetime

from chat_models import Conversation, Message
from listing_chat.db.base import Datastore
from listing_chat.errors import ConversationNotFound, EmptyMessage, NotParticipant
from listing_chat.session import ChatSession

logger = logging.getLogger(__name__)


class MessageStore:
    """Sends and fetches messages on behalf of the session user."""

    def __init__(self, datastore: Datastore, session: ChatSession):
        self.datastore = datastore
        self.session = session

    async def _participant_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = await self.datastore.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFound()
        if not conversation.has_participant(user_id):
            raise NotParticipant()
        return conversation

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        client_token: str | None = None,
    ) -> Message:
        """Append a message from the session user.

        The recipient is the other participant. The datastore bumps the
        conversation's updated_at to the message timestamp in the same write.
        A repeated client_token returns the message stored the first time.

        Raises:
            EmptyMessage: If content is blank after trimming
            ConversationNotFound: If the conversation does not exist
            NotParticipant: If the sender is not in the conversation

        """
        sender_id = self.session.require_user()
        text = (content or "").strip()
        if not text:
            raise EmptyMessage()

        conversation = await self._participant_conversation(conversation_id, sender_id)

        if client_token:
            existing = await self.datastore.find_message_by_token(
                conversation_id, sender_id, client_token
            )
            if existing:
                logger.info(f"Duplicate send {client_token} in {conversation_id}, returning original")
                return existing

        message = await self.datastore.insert_message(
            Message(
                conversation_id=conversation.id,
                sender_id=sender_id,
                recipient_id=conversation.other_participant(sender_id),
                content=text,
                client_token=client_token,
            )
        )
        logger.debug(f"Message {message.id} sent in conversation {conversation_id}")
        return message

    async def fetch_messages(
        self,
        conversation_id: str,
        before: datetime | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        """Messages in created_at order, optionally one page older than `before`."""
        user_id = self.session.require_user()
        await self._participant_conversation(conversation_id, user_id)
        messages = await self.datastore.get_messages(conversation_id, before=before, limit=limit)
        return sorted(messages, key=lambda m: m.sort_key)
