"""Per-session composition of the messaging components."""

import logging
from datetime import datetime

from chat_models import Conversation, ConversationSummary, Message, UnreadCounts
from listing_chat.db.base import Datastore
from listing_chat.services.active import ActiveConversation
from listing_chat.services.directory import ConversationDirectory
from listing_chat.services.live_listener import LiveUpdateListener
from listing_chat.services.message_store import MessageStore
from listing_chat.services.unread import UnreadTracker
from listing_chat.session import ChatSession

logger = logging.getLogger(__name__)


class ChatClient:
    """Wires directory, store, tracker, suppressor and listener around one session."""

    def __init__(self, datastore: Datastore, session: ChatSession, **listener_options):
        self.datastore = datastore
        self.session = session
        self.directory = ConversationDirectory(datastore, session)
        self.messages = MessageStore(datastore, session)
        self.unread = UnreadTracker(datastore, session)
        self.active = ActiveConversation(session, self.unread)
        self.listener = LiveUpdateListener(
            datastore,
            session,
            self.unread,
            self.active,
            self.messages,
            self.directory,
            **listener_options,
        )

    async def start(self):
        await self.listener.start()

    async def stop(self):
        await self.listener.stop()

    async def ensure_conversation(self, other_id: str, listing_id: str | None = None) -> str:
        return await self.directory.ensure_conversation(other_id, listing_id)

    async def open_conversation(self, conversation_id: str) -> list[Message]:
        """Make a conversation active and load its history.

        The flag is set before fetching so events arriving during the fetch
        are merged into the same list.
        """
        await self.directory.get_conversation(conversation_id)
        await self.active.set_active(conversation_id)
        for message in await self.messages.fetch_messages(conversation_id):
            self.session.add_message(message)
        return list(self.session.messages)

    async def close_conversation(self):
        await self.active.clear_active()

    async def send(
        self, conversation_id: str, content: str, client_token: str | None = None
    ) -> Message:
        message = await self.messages.send_message(conversation_id, content, client_token)
        if self.active.is_active(conversation_id):
            self.session.add_message(message)
        return message

    async def fetch_messages(
        self,
        conversation_id: str,
        before: datetime | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        return await self.messages.fetch_messages(conversation_id, before=before, limit=limit)

    async def get_conversation(self, conversation_id: str) -> Conversation:
        return await self.directory.get_conversation(conversation_id)

    async def list_conversations(self) -> list[ConversationSummary]:
        counts = await self.unread.get_unread_counts()
        return await self.directory.list_conversations(counts)

    async def get_unread_counts(self) -> UnreadCounts:
        return await self.unread.get_unread_counts()

    async def mark_read(self, conversation_id: str) -> int:
        await self.directory.get_conversation(conversation_id)
        return await self.unread.mark_read(conversation_id)
