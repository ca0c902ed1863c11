"""In-memory datastore for local development and tests.

Behaves like the PostgreSQL datastore: enforces the one-conversation-per-pair
uniqueness key, assigns monotonically increasing server timestamps, and emits
change events for every insert and update. Every operation yields to the event
loop once so concurrent callers interleave the way network round-trips do.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from chat_models import ChangeEvent, ChangeType, Conversation, Message, normalize_pair
from listing_chat.db.base import Datastore
from listing_chat.errors import ConversationConflict, TransientNetworkError
from listing_chat.realtime import ChangeFeed, FeedClosed, FeedFilter, Subscription

logger = logging.getLogger(__name__)


class InMemoryDatastore(Datastore):
    """Dict-backed datastore with failure injection hooks."""

    def __init__(self):
        self.feed = ChangeFeed()
        self.conversations: dict[str, Conversation] = {}
        self.messages: dict[str, Message] = {}
        self._pair_index: dict[tuple[str, str, str], str] = {}
        self._last_timestamp: datetime | None = None

        # Failure injection: number of upcoming calls that fail
        self.fail_reads = 0
        self.fail_writes = 0
        self.fail_subscribes = 0

    # ============= Helpers =============

    async def _round_trip(self, write: bool = False):
        await asyncio.sleep(0)
        if write and self.fail_writes > 0:
            self.fail_writes -= 1
            raise TransientNetworkError("Simulated write failure")
        if not write and self.fail_reads > 0:
            self.fail_reads -= 1
            raise TransientNetworkError("Simulated read failure")

    def _server_now(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    @staticmethod
    def _pair_key(user_a: str, user_b: str, listing_id: str | None) -> tuple[str, str, str]:
        return (*normalize_pair(user_a, user_b), listing_id or "")

    async def _emit(self, event: ChangeEvent):
        if self.feed.connected:
            await self.feed.publish(event)

    async def subscribe(self, filters: list[FeedFilter]) -> Subscription:
        await asyncio.sleep(0)
        if self.fail_subscribes > 0:
            self.fail_subscribes -= 1
            raise FeedClosed("Simulated subscribe failure")
        self.feed.reconnect()
        return await self.feed.subscribe(filters)

    async def drop_feed(self):
        """Simulate the realtime connection dropping."""
        await self.feed.disconnect("dropped (simulated)")

    # ============= Conversations =============

    async def find_conversation(
        self, user_a: str, user_b: str, listing_id: str | None
    ) -> Conversation | None:
        await self._round_trip()
        conversation_id = self._pair_index.get(self._pair_key(user_a, user_b, listing_id))
        if conversation_id is None:
            return None
        return self.conversations[conversation_id].model_copy()

    async def insert_conversation(self, conversation: Conversation) -> Conversation:
        await self._round_trip(write=True)
        key = self._pair_key(
            conversation.participant_a_id, conversation.participant_b_id, conversation.listing_id
        )
        if key in self._pair_index:
            raise ConversationConflict(f"Conversation already exists for {key}")
        now = self._server_now()
        stored = conversation.model_copy(update={"created_at": now, "updated_at": now})
        self.conversations[stored.id] = stored
        self._pair_index[key] = stored.id
        await self._emit(ChangeEvent.for_conversation(ChangeType.INSERT, stored))
        return stored.model_copy()

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        await self._round_trip()
        conversation = self.conversations.get(conversation_id)
        return conversation.model_copy() if conversation else None

    async def list_conversations(self, user_id: str, limit: int = 50) -> list[Conversation]:
        await self._round_trip()
        mine = [c for c in self.conversations.values() if c.has_participant(user_id)]
        mine.sort(key=lambda c: c.updated_at, reverse=True)
        return [c.model_copy() for c in mine[:limit]]

    # ============= Messages =============

    async def insert_message(self, message: Message) -> Message:
        await self._round_trip(write=True)
        conversation = self.conversations.get(message.conversation_id)
        if conversation is None:
            raise ValueError(f"Conversation {message.conversation_id} does not exist")
        if message.client_token:
            for existing in self.messages.values():
                if (
                    existing.conversation_id == message.conversation_id
                    and existing.sender_id == message.sender_id
                    and existing.client_token == message.client_token
                ):
                    return existing.model_copy()

        stored = message.model_copy(update={"created_at": self._server_now(), "read": False})
        self.messages[stored.id] = stored
        updated = conversation.model_copy(
            update={"updated_at": max(conversation.updated_at, stored.created_at)}
        )
        self.conversations[updated.id] = updated

        await self._emit(ChangeEvent.for_message(ChangeType.INSERT, stored))
        await self._emit(ChangeEvent.for_conversation(ChangeType.UPDATE, updated))
        return stored.model_copy()

    async def find_message_by_token(
        self, conversation_id: str, sender_id: str, client_token: str
    ) -> Message | None:
        await self._round_trip()
        for message in self.messages.values():
            if (
                message.conversation_id == conversation_id
                and message.sender_id == sender_id
                and message.client_token == client_token
            ):
                return message.model_copy()
        return None

    async def get_messages(
        self,
        conversation_id: str,
        before: datetime | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        await self._round_trip()
        rows = [m for m in self.messages.values() if m.conversation_id == conversation_id]
        if before is not None:
            rows = [m for m in rows if m.created_at < before]
        rows.sort(key=lambda m: m.sort_key)
        if limit is not None:
            rows = rows[-limit:] if limit > 0 else []
        return [m.model_copy() for m in rows]

    async def get_last_messages(self, conversation_ids: list[str]) -> dict[str, Message]:
        await self._round_trip()
        wanted = set(conversation_ids)
        latest: dict[str, Message] = {}
        for message in self.messages.values():
            if message.conversation_id not in wanted:
                continue
            current = latest.get(message.conversation_id)
            if current is None or message.sort_key > current.sort_key:
                latest[message.conversation_id] = message
        return {cid: m.model_copy() for cid, m in latest.items()}

    async def unread_conversation_ids(self, user_id: str) -> list[str]:
        await self._round_trip()
        return [
            m.conversation_id
            for m in self.messages.values()
            if m.recipient_id == user_id and not m.read
        ]

    async def mark_conversation_read(self, conversation_id: str, user_id: str) -> int:
        await self._round_trip(write=True)
        changed: list[Message] = []
        for message in list(self.messages.values()):
            if (
                message.conversation_id == conversation_id
                and message.recipient_id == user_id
                and not message.read
            ):
                updated = message.model_copy(update={"read": True})
                self.messages[updated.id] = updated
                changed.append(updated)
        for message in changed:
            await self._emit(ChangeEvent.for_message(ChangeType.UPDATE, message))
        return len(changed)

    async def mark_message_read(self, message_id: str, user_id: str) -> bool:
        await self._round_trip(write=True)
        message = self.messages.get(message_id)
        if message is None or message.recipient_id != user_id or message.read:
            return False
        updated = message.model_copy(update={"read": True})
        self.messages[updated.id] = updated
        await self._emit(ChangeEvent.for_message(ChangeType.UPDATE, updated))
        return True
