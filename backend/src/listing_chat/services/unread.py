"""Unread count bookkeeping for a session.

Counts come from the datastore (unread messages addressed to the user). The
active conversation is dropped from the result for display only; its rows stay
unread in storage until mark_read runs.
"""

import logging
from collections import Counter
from typing import Awaitable, Callable

from chat_models import UnreadCounts
from listing_chat.db.base import Datastore
from listing_chat.session import ChatSession

logger = logging.getLogger(__name__)

UnreadCallback = Callable[[UnreadCounts], Awaitable[None]]


class UnreadTracker:
    """Computes, caches and acknowledges unread counts for the session user."""

    def __init__(self, datastore: Datastore, session: ChatSession):
        self.datastore = datastore
        self.session = session
        self._callbacks: list[UnreadCallback] = []

    def on_change(self, callback: UnreadCallback):
        """Register a coroutine called with every new UnreadCounts."""
        self._callbacks.append(callback)

    @property
    def cached(self) -> UnreadCounts | None:
        return self.session.unread

    async def get_unread_counts(self) -> UnreadCounts:
        """Recompute counts from the datastore, suppressing the active conversation."""
        user_id = self.session.require_user()
        conversation_ids = await self.datastore.unread_conversation_ids(user_id)
        active = self.session.active_conversation_id

        counts = Counter(cid for cid in conversation_ids if cid != active)
        result = UnreadCounts(
            user_id=user_id,
            by_conversation=dict(counts),
            suppressed_conversation_id=active,
        )
        await self._publish(result)
        return result

    async def mark_read(self, conversation_id: str, refresh: bool = True) -> int:
        """Mark every unread message to the session user in a conversation as read.

        Idempotent: with nothing unread this changes no rows.

        Returns:
            Number of messages flipped to read

        """
        user_id = self.session.require_user()
        changed = await self.datastore.mark_conversation_read(conversation_id, user_id)
        if changed:
            logger.info(f"Marked {changed} messages read in {conversation_id} for {user_id}")
        if refresh:
            await self.get_unread_counts()
        return changed

    async def mark_message_read(self, message_id: str) -> bool:
        """Mark a single message read if the session user is its recipient."""
        user_id = self.session.require_user()
        return await self.datastore.mark_message_read(message_id, user_id)

    async def increment(self, conversation_id: str, by: int = 1) -> UnreadCounts | None:
        """Bump the cached count for a conversation without a round-trip.

        Used by the live listener for new messages; the next recompute is
        authoritative. The active conversation is never bumped. Without a
        cached value there is nothing to bump, so counts are computed instead.
        """
        current = self.session.unread
        if conversation_id == self.session.active_conversation_id:
            return current
        if current is None:
            return await self.get_unread_counts()
        by_conversation = dict(current.by_conversation)
        by_conversation[conversation_id] = by_conversation.get(conversation_id, 0) + by
        result = current.model_copy(update={"by_conversation": by_conversation})
        await self._publish(result)
        return result

    async def _publish(self, counts: UnreadCounts):
        self.session.unread = counts
        for callback in list(self._callbacks):
            try:
                await callback(counts)
            except Exception as e:
                logger.error(f"Unread callback failed: {e}")
