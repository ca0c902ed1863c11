"""Active-conversation suppressor.

Single source of truth for which conversation the session is looking at.
Opening a conversation acknowledges its messages; leaving it flushes any read
acknowledgements that were still in flight.
"""

import logging

from listing_chat.services.unread import UnreadTracker
from listing_chat.session import ChatSession

logger = logging.getLogger(__name__)


class ActiveConversation:
    """Holds the active conversation flag for one session."""

    def __init__(self, session: ChatSession, tracker: UnreadTracker):
        self.session = session
        self.tracker = tracker

    def get_active(self) -> str | None:
        return self.session.active_conversation_id

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id == self.session.active_conversation_id

    async def set_active(self, conversation_id: str):
        """Make a conversation active, mark it read and recompute counts."""
        current = self.session.active_conversation_id
        if current is not None and current != conversation_id:
            await self.clear_active()

        self.session.active_conversation_id = conversation_id
        logger.debug(f"Session {self.session.session_id} active conversation -> {conversation_id}")
        await self.tracker.mark_read(conversation_id)

    async def clear_active(self):
        """Leave the active conversation.

        Messages that arrived while active but whose read flag was not yet
        persisted get one final mark_read before the flag is cleared.
        """
        current = self.session.active_conversation_id
        if current is None:
            return

        try:
            if self.session.unpersisted_reads:
                logger.info(
                    f"Flushing {len(self.session.unpersisted_reads)} pending reads for {current}"
                )
                await self.tracker.mark_read(current, refresh=False)
        finally:
            self.session.active_conversation_id = None
            self.session.unpersisted_reads.clear()
            self.session.messages = []

        await self.tracker.get_unread_counts()

    def note_unpersisted(self, message_id: str):
        """Record a message seen while active whose read write is in flight."""
        self.session.unpersisted_reads.add(message_id)

    def note_persisted(self, message_id: str):
        self.session.unpersisted_reads.discard(message_id)
