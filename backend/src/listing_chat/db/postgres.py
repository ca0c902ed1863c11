"""PostgreSQL datastore for conversations and messages."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime

import asyncpg

from chat_models import ChangeEvent, ChangeType, Collection, Conversation, Message
from listing_chat.config import settings
from listing_chat.db.base import Datastore
from listing_chat.errors import ConversationConflict, TransientNetworkError
from listing_chat.realtime import ChangeFeed, FeedClosed, FeedFilter, Subscription

logger = logging.getLogger(__name__)

# Failures that mean the round-trip never completed
CONNECTION_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
)


# SQL schema for messaging tables
SCHEMA_SQL = """
-- Conversations: one per unordered participant pair and listing
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    participant_a_id TEXT NOT NULL,
    participant_b_id TEXT NOT NULL,
    listing_id TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
    CHECK (participant_a_id <> participant_b_id)
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_conversations_pair_listing ON conversations (
    LEAST(participant_a_id, participant_b_id),
    GREATEST(participant_a_id, participant_b_id),
    COALESCE(listing_id, '')
);
CREATE INDEX IF NOT EXISTS idx_conversations_a ON conversations(participant_a_id);
CREATE INDEX IF NOT EXISTS idx_conversations_b ON conversations(participant_b_id);

-- Messages: append-only, read flag flips once
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id),
    sender_id TEXT NOT NULL,
    recipient_id TEXT NOT NULL,
    content TEXT NOT NULL CHECK (length(content) > 0),
    read BOOLEAN NOT NULL DEFAULT FALSE,
    client_token TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
    CHECK (sender_id <> recipient_id)
);
CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, created_at);
CREATE INDEX IF NOT EXISTS idx_messages_unread ON messages(recipient_id) WHERE NOT read;
CREATE UNIQUE INDEX IF NOT EXISTS uq_messages_client_token
    ON messages(conversation_id, sender_id, client_token)
    WHERE client_token IS NOT NULL;

-- Change notifications (full new row)
CREATE OR REPLACE FUNCTION listing_chat_notify() RETURNS trigger AS $$
DECLARE
    payload TEXT;
BEGIN
    payload := json_build_object(
        'collection', TG_TABLE_NAME,
        'type', TG_OP,
        'new', row_to_json(NEW)
    )::text;
    -- NOTIFY payloads are capped at 8000 bytes; oversized rows send the key only
    IF octet_length(payload) >= 8000 THEN
        payload := json_build_object(
            'collection', TG_TABLE_NAME,
            'type', TG_OP,
            'id', NEW.id
        )::text;
    END IF;
    PERFORM pg_notify(TG_ARGV[0], payload);
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS conversations_notify ON conversations;
CREATE TRIGGER conversations_notify AFTER INSERT OR UPDATE ON conversations
    FOR EACH ROW EXECUTE FUNCTION listing_chat_notify('{channel}');

DROP TRIGGER IF EXISTS messages_notify ON messages;
CREATE TRIGGER messages_notify AFTER INSERT OR UPDATE ON messages
    FOR EACH ROW EXECUTE FUNCTION listing_chat_notify('{channel}');
"""


class PostgresDatastore(Datastore):
    """PostgreSQL datastore with LISTEN/NOTIFY change feed."""

    def __init__(self, database_url: str | None = None, channel: str | None = None):
        self.database_url = database_url or settings.database_url
        self.channel = channel or settings.notify_channel
        self.feed = ChangeFeed()
        self._pool: asyncpg.Pool | None = None
        self._listener: asyncpg.Connection | None = None
        self._listener_lock = asyncio.Lock()
        self._publish_tasks: set[asyncio.Task] = set()

    async def connect(self):
        """Create connection pool and bootstrap schema."""
        try:
            self._pool = await asyncpg.create_pool(
                self.database_url,
                min_size=2,
                max_size=10,
            )
        except CONNECTION_ERRORS as e:
            raise TransientNetworkError(f"Could not connect to database: {e}") from e
        await self.ensure_tables_exist()
        logger.info("Connected to PostgreSQL datastore")

    async def disconnect(self):
        """Close listener and connection pool."""
        if self._listener is not None:
            await self._listener.close()
            self._listener = None
        if self._pool:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def connection(self):
        """Get a connection from the pool, translating connection failures."""
        if not self._pool:
            raise RuntimeError("Database not connected")
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except CONNECTION_ERRORS as e:
            logger.warning(f"Database round-trip failed: {e}")
            raise TransientNetworkError(str(e)) from e

    async def ensure_tables_exist(self):
        """Create tables, indexes and notify triggers if they don't exist."""
        async with self.connection() as conn:
            await conn.execute(SCHEMA_SQL.format(channel=self.channel))

    # ============= Change Feed =============

    async def subscribe(self, filters: list[FeedFilter]) -> Subscription:
        """Ensure the LISTEN connection is up, then subscribe."""
        async with self._listener_lock:
            if self._listener is None or self._listener.is_closed():
                await self._start_listener()
        return await self.feed.subscribe(filters)

    async def _start_listener(self):
        try:
            conn = await asyncpg.connect(self.database_url)
            await conn.add_listener(self.channel, self._on_notify)
        except CONNECTION_ERRORS as e:
            raise FeedClosed(f"Could not LISTEN on {self.channel}: {e}") from e
        conn.add_termination_listener(self._on_listener_terminated)
        self._listener = conn
        self.feed.reconnect()
        logger.info(f"Listening for changes on channel {self.channel}")

    def _on_notify(self, connection, pid, channel, payload):
        try:
            data = json.loads(payload)
            if "new" not in data:
                self._spawn(
                    self._publish_by_id(
                        Collection(data["collection"]), ChangeType(data["type"]), data["id"]
                    )
                )
                return
            event = ChangeEvent.model_validate(data)
        except (KeyError, ValueError) as e:
            logger.error(f"Discarding malformed change notification: {e}")
            return
        self._spawn(self.feed.publish(event))

    async def _publish_by_id(self, collection: Collection, change: ChangeType, row_id: str):
        """Load a row whose notification was too large to carry it, then publish."""
        try:
            async with self.connection() as conn:
                row = await conn.fetchrow(
                    f"SELECT * FROM {collection.value} WHERE id = $1", row_id
                )
        except TransientNetworkError as e:
            logger.warning(f"Could not load {collection.value} row {row_id} for change feed: {e}")
            return
        if row is None:
            return
        if collection == Collection.MESSAGES:
            event = ChangeEvent.for_message(change, self._row_to_message(row))
        else:
            event = ChangeEvent.for_conversation(change, self._row_to_conversation(row))
        await self.feed.publish(event)

    def _on_listener_terminated(self, connection):
        self._listener = None
        self._spawn(self.feed.disconnect("listener connection terminated"))

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._publish_tasks.add(task)
        task.add_done_callback(self._publish_tasks.discard)

    # ============= Conversation Operations =============

    async def find_conversation(
        self, user_a: str, user_b: str, listing_id: str | None
    ) -> Conversation | None:
        async with self.connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM conversations
                WHERE ((participant_a_id = $1 AND participant_b_id = $2)
                    OR (participant_a_id = $2 AND participant_b_id = $1))
                  AND listing_id IS NOT DISTINCT FROM $3
                LIMIT 1
                """,
                user_a,
                user_b,
                listing_id,
            )
        if not row:
            return None
        return self._row_to_conversation(row)

    async def insert_conversation(self, conversation: Conversation) -> Conversation:
        async with self.connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO conversations (id, participant_a_id, participant_b_id, listing_id)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT DO NOTHING
                RETURNING *
                """,
                conversation.id,
                conversation.participant_a_id,
                conversation.participant_b_id,
                conversation.listing_id,
            )
        if not row:
            raise ConversationConflict(
                f"Conversation already exists for {conversation.pair_key}"
            )
        return self._row_to_conversation(row)

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        async with self.connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM conversations WHERE id = $1", conversation_id
            )
        if not row:
            return None
        return self._row_to_conversation(row)

    async def list_conversations(self, user_id: str, limit: int = 50) -> list[Conversation]:
        async with self.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM conversations
                WHERE participant_a_id = $1 OR participant_b_id = $1
                ORDER BY updated_at DESC
                LIMIT $2
                """,
                user_id,
                limit,
            )
        return [self._row_to_conversation(row) for row in rows]

    def _row_to_conversation(self, row: asyncpg.Record) -> Conversation:
        return Conversation(
            id=row["id"],
            participant_a_id=row["participant_a_id"],
            participant_b_id=row["participant_b_id"],
            listing_id=row["listing_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ============= Message Operations =============

    async def insert_message(self, message: Message) -> Message:
        async with self.connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    INSERT INTO messages
                    (id, conversation_id, sender_id, recipient_id, content, client_token)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    ON CONFLICT DO NOTHING
                    RETURNING *
                    """,
                    message.id,
                    message.conversation_id,
                    message.sender_id,
                    message.recipient_id,
                    message.content,
                    message.client_token,
                )
                if not row:
                    # Same client token already stored
                    row = await conn.fetchrow(
                        """
                        SELECT * FROM messages
                        WHERE conversation_id = $1 AND sender_id = $2 AND client_token = $3
                        """,
                        message.conversation_id,
                        message.sender_id,
                        message.client_token,
                    )
                    return self._row_to_message(row)
                # Concurrent sends commit in any order; updated_at only moves forward
                await conn.execute(
                    "UPDATE conversations SET updated_at = GREATEST(updated_at, $1) WHERE id = $2",
                    row["created_at"],
                    message.conversation_id,
                )
        return self._row_to_message(row)

    async def find_message_by_token(
        self, conversation_id: str, sender_id: str, client_token: str
    ) -> Message | None:
        async with self.connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM messages
                WHERE conversation_id = $1 AND sender_id = $2 AND client_token = $3
                """,
                conversation_id,
                sender_id,
                client_token,
            )
        return self._row_to_message(row) if row else None

    async def get_messages(
        self,
        conversation_id: str,
        before: datetime | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        query = "SELECT * FROM messages WHERE conversation_id = $1"
        params: list = [conversation_id]

        if before is not None:
            query += f" AND created_at < ${len(params) + 1}"
            params.append(before)

        if limit is None:
            query += " ORDER BY created_at ASC, id ASC"
        else:
            # Newest page first, reversed below
            query += f" ORDER BY created_at DESC, id DESC LIMIT ${len(params) + 1}"
            params.append(limit)

        async with self.connection() as conn:
            rows = await conn.fetch(query, *params)
        messages = [self._row_to_message(row) for row in rows]
        if limit is not None:
            messages.reverse()
        return messages

    async def get_last_messages(self, conversation_ids: list[str]) -> dict[str, Message]:
        if not conversation_ids:
            return {}
        async with self.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT DISTINCT ON (conversation_id) *
                FROM messages
                WHERE conversation_id = ANY($1::text[])
                ORDER BY conversation_id, created_at DESC, id DESC
                """,
                conversation_ids,
            )
        return {row["conversation_id"]: self._row_to_message(row) for row in rows}

    async def unread_conversation_ids(self, user_id: str) -> list[str]:
        async with self.connection() as conn:
            rows = await conn.fetch(
                "SELECT conversation_id FROM messages WHERE recipient_id = $1 AND read = FALSE",
                user_id,
            )
        return [row["conversation_id"] for row in rows]

    async def mark_conversation_read(self, conversation_id: str, user_id: str) -> int:
        async with self.connection() as conn:
            status = await conn.execute(
                """
                UPDATE messages SET read = TRUE
                WHERE conversation_id = $1 AND recipient_id = $2 AND read = FALSE
                """,
                conversation_id,
                user_id,
            )
        # asyncpg returns the command tag, e.g. "UPDATE 3"
        return int(status.split()[-1])

    async def mark_message_read(self, message_id: str, user_id: str) -> bool:
        async with self.connection() as conn:
            status = await conn.execute(
                """
                UPDATE messages SET read = TRUE
                WHERE id = $1 AND recipient_id = $2 AND read = FALSE
                """,
                message_id,
                user_id,
            )
        return int(status.split()[-1]) > 0

    def _row_to_message(self, row: asyncpg.Record) -> Message:
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            sender_id=row["sender_id"],
            recipient_id=row["recipient_id"],
            content=row["content"],
            read=row["read"],
            created_at=row["created_at"],
            client_token=row["client_token"],
        )
