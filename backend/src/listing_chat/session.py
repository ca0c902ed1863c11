"""Per-session messaging state.

A session is one open client (browser tab). It owns the only client-local
mutable state: the active conversation flag, the unread count cache, the
displayed message list and the conversation list. Sessions of the same user
are independent of each other.
"""

import asyncio
import bisect
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable

from chat_models import ConversationSummary, Message, UnreadCounts
from listing_chat.config import settings
from listing_chat.errors import NotAuthenticated, NotParticipant

logger = logging.getLogger(__name__)


@dataclass
class ChatSession:
    """Explicit context object shared by the messaging components."""

    user_id: str | None
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    active_conversation_id: str | None = None
    unread: UnreadCounts | None = None
    messages: list[Message] = field(default_factory=list)
    conversations: list[ConversationSummary] = field(default_factory=list)
    # Messages seen while active whose read flag is not yet persisted
    unpersisted_reads: set[str] = field(default_factory=set)

    def require_user(self) -> str:
        """Return the verified user id or raise NotAuthenticated."""
        if not self.user_id:
            raise NotAuthenticated()
        return self.user_id

    def add_message(self, message: Message) -> bool:
        """Merge a message into the displayed list, keeping created_at order.

        Returns False if a message with the same id is already present.
        """
        for index, existing in enumerate(self.messages):
            if existing.id == message.id:
                if message.read and not existing.read:
                    self.messages[index] = existing.model_copy(update={"read": True})
                return False
        bisect.insort(self.messages, message, key=lambda m: m.sort_key)
        return True

    def find_summary(self, conversation_id: str) -> ConversationSummary | None:
        for summary in self.conversations:
            if summary.conversation.id == conversation_id:
                return summary
        return None

    def sort_conversations(self) -> None:
        """Most recently active first."""
        self.conversations.sort(key=lambda s: s.updated_at, reverse=True)


class SessionRegistry:
    """Live sessions keyed by session id.

    A session belongs to the user that created it. Sessions with an open
    event stream stay registered until the stream ends; the rest expire
    after idle_timeout seconds without a request.
    """

    def __init__(
        self,
        idle_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.idle_timeout = idle_timeout if idle_timeout is not None else settings.session_idle_seconds
        self._clock = clock
        self._clients: dict[str, "ChatClient"] = {}
        self._last_seen: dict[str, float] = {}
        self._streaming: set[str] = set()
        self._lock = asyncio.Lock()

    async def get_or_create(self, session_id: str, user_id: str, datastore) -> "ChatClient":
        """Get the client for a session, creating it for this user if needed.

        Raises:
            NotParticipant: If the session belongs to another user

        """
        from listing_chat.client import ChatClient

        await self.expire_idle()
        async with self._lock:
            client = self._clients.get(session_id)
            if client is not None and client.session.user_id != user_id:
                logger.warning(f"User {user_id} presented session {session_id} of another user")
                raise NotParticipant("Session belongs to another user")
            self._last_seen[session_id] = self._clock()
            if client is not None:
                return client
            client = ChatClient(datastore, ChatSession(user_id=user_id, session_id=session_id))
            self._clients[session_id] = client
        logger.info(f"Session {session_id} opened for user {user_id}")
        return client

    def get(self, session_id: str) -> "ChatClient | None":
        return self._clients.get(session_id)

    def mark_streaming(self, session_id: str):
        """Keep a session registered while its event stream is open."""
        self._streaming.add(session_id)

    async def expire_idle(self) -> list[str]:
        """Close sessions idle longer than idle_timeout that have no open stream."""
        now = self._clock()
        async with self._lock:
            expired = [
                session_id
                for session_id, seen in self._last_seen.items()
                if session_id not in self._streaming and now - seen > self.idle_timeout
            ]
            clients = [self._clients.pop(session_id) for session_id in expired]
            for session_id in expired:
                del self._last_seen[session_id]
        for client in clients:
            await client.stop()
        if expired:
            logger.info(f"Expired {len(expired)} idle sessions")
        return expired

    async def close(self, session_id: str):
        async with self._lock:
            client = self._clients.pop(session_id, None)
            self._last_seen.pop(session_id, None)
            self._streaming.discard(session_id)
        if client is not None:
            await client.stop()
            logger.info(f"Session {session_id} closed")

    async def close_all(self):
        async with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
            self._last_seen.clear()
            self._streaming.clear()
        for client in clients:
            await client.stop()

    def __len__(self) -> int:
        return len(self._clients)
