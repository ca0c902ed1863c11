"""Live update listener.

Keeps a session's conversation list, displayed message list and unread counts
in step with the datastore's change feed. One consolidated subscription per
session covers messages sent to or by the user and the user's conversations.

States:
    IDLE -> SUBSCRIBING -> ACTIVE
    ACTIVE -> DEGRADED      (feed dropped; poll until resubscribed)
    DEGRADED -> SUBSCRIBING (periodic resubscribe attempt)
    SUBSCRIBING -> ERROR    (caller error such as a missing identity)
    any -> CLOSED           (stop)

Events are delivered at least once and in no particular order relative to local
writes, so every merge is keyed by message id and every read acknowledgement is
idempotent.
"""

import asyncio
import logging
from collections import OrderedDict
from contextlib import suppress
from enum import Enum
from typing import Awaitable, Callable

from chat_models import (
    ChangeEvent,
    ChangeType,
    Collection,
    Conversation,
    ConversationSummary,
    Message,
    SessionEventType,
    SessionNotice,
    UnreadCounts,
)
from listing_chat.config import settings
from listing_chat.db.base import Datastore
from listing_chat.errors import MessagingError, TransientNetworkError
from listing_chat.realtime import FeedClosed, Subscription
from listing_chat.services.active import ActiveConversation
from listing_chat.services.directory import ConversationDirectory
from listing_chat.services.message_store import MessageStore
from listing_chat.services.unread import UnreadTracker
from listing_chat.session import ChatSession

logger = logging.getLogger(__name__)

NoticeCallback = Callable[[SessionNotice], Awaitable[None]]


class ListenerState(str, Enum):
    """Subscription lifecycle."""

    IDLE = "idle"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    DEGRADED = "degraded"
    ERROR = "error"
    CLOSED = "closed"


class LiveUpdateListener:
    """Reconciles session state from realtime events, polling when the feed is down."""

    def __init__(
        self,
        datastore: Datastore,
        session: ChatSession,
        tracker: UnreadTracker,
        active: ActiveConversation,
        store: MessageStore,
        directory: ConversationDirectory,
        poll_interval: float | None = None,
        max_backoff: float | None = None,
        resubscribe_interval: float | None = None,
        seen_window: int | None = None,
    ):
        self.datastore = datastore
        self.session = session
        self.tracker = tracker
        self.active = active
        self.store = store
        self.directory = directory
        self.poll_interval = poll_interval or settings.poll_interval_seconds
        self.max_backoff = max_backoff or settings.poll_max_backoff_seconds
        self.resubscribe_interval = resubscribe_interval or settings.resubscribe_interval_seconds
        self.seen_window = seen_window or settings.seen_message_window

        self.state = ListenerState.IDLE
        self._subscription: Subscription | None = None
        self._pump_task: asyncio.Task | None = None
        self._poll_task: asyncio.Task | None = None
        self._callbacks: list[NoticeCallback] = []
        # Recently applied message ids, oldest first, capped at seen_window
        self._seen_message_ids: OrderedDict[str, None] = OrderedDict()

        tracker.on_change(self._on_unread_changed)

    # ============= Observers =============

    def on_event(self, callback: NoticeCallback):
        """Register a coroutine called with every reconciled notice."""
        self._callbacks.append(callback)

    def remove_callback(self, callback: NoticeCallback):
        with suppress(ValueError):
            self._callbacks.remove(callback)

    async def _emit(self, event_type: SessionEventType, data: dict):
        notice = SessionNotice(type=event_type, data=data)
        for callback in list(self._callbacks):
            try:
                await callback(notice)
            except Exception as e:
                logger.error(f"Notice callback failed for {event_type.value}: {e}")

    async def _transition(self, state: ListenerState):
        if state == self.state:
            return
        logger.info(f"Session {self.session.session_id} listener {self.state.value} -> {state.value}")
        self.state = state
        await self._emit(SessionEventType.STATUS, {"state": state.value})

    async def _on_unread_changed(self, counts: UnreadCounts):
        for summary in self.session.conversations:
            summary.unread_count = counts.get(summary.conversation.id)
        await self._emit(SessionEventType.UNREAD_UPDATED, counts.model_dump(mode="json"))

    # ============= Lifecycle =============

    async def start(self):
        """Load initial state and subscribe; falls back to polling on failure."""
        if self.state not in (ListenerState.IDLE, ListenerState.ERROR):
            return
        try:
            await self.refresh()
        except TransientNetworkError as e:
            logger.warning(f"Initial load failed for session {self.session.session_id}: {e}")
        await self._subscribe_or_degrade()

    async def stop(self):
        """Cancel the pump and polling tasks and close the subscription."""
        await self._transition(ListenerState.CLOSED)
        current = asyncio.current_task()
        for task in (self._pump_task, self._poll_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._pump_task = None
        self._poll_task = None
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None

    async def _subscribe(self):
        await self._transition(ListenerState.SUBSCRIBING)
        user_id = self.session.require_user()
        self._subscription = await self.datastore.subscribe(
            [
                (Collection.MESSAGES, "recipient_id", user_id),
                (Collection.MESSAGES, "sender_id", user_id),
                (Collection.CONVERSATIONS, "participant", user_id),
            ]
        )
        await self._transition(ListenerState.ACTIVE)
        self._pump_task = asyncio.create_task(self._pump(self._subscription))

    async def _subscribe_or_degrade(self):
        try:
            await self._subscribe()
        except (FeedClosed, TransientNetworkError) as e:
            logger.warning(f"Realtime subscribe failed, polling instead: {e}")
            await self._enter_degraded()
        except MessagingError:
            await self._transition(ListenerState.ERROR)
            raise

    async def _pump(self, subscription: Subscription):
        try:
            async for event in subscription:
                try:
                    await self.handle_event(event)
                except MessagingError as e:
                    logger.warning(f"Could not reconcile {event.collection.value} event: {e}")
        except FeedClosed:
            if self.state == ListenerState.CLOSED:
                return
            logger.warning(f"Realtime feed dropped for session {self.session.session_id}")
            self._subscription = None
            await self._enter_degraded()

    async def _enter_degraded(self):
        await self._transition(ListenerState.DEGRADED)
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self):
        loop = asyncio.get_running_loop()
        delay = self.poll_interval
        last_attempt = loop.time()

        while self.state == ListenerState.DEGRADED:
            await asyncio.sleep(delay)
            if self.state != ListenerState.DEGRADED:
                break

            try:
                await self.poll_once()
                delay = self.poll_interval
            except TransientNetworkError as e:
                delay = min(delay * 2, self.max_backoff)
                logger.warning(f"Poll failed, retrying in {delay:.1f}s: {e}")

            if loop.time() - last_attempt >= self.resubscribe_interval:
                last_attempt = loop.time()
                try:
                    await self._subscribe()
                except (FeedClosed, TransientNetworkError) as e:
                    logger.info(f"Resubscribe failed, still polling: {e}")
                    await self._transition(ListenerState.DEGRADED)
                    continue
                # Catch up on anything missed while down; replays dedup by id
                with suppress(TransientNetworkError):
                    await self.poll_once()

    async def poll_once(self):
        """One degraded-mode reconciliation pass."""
        await self.refresh()
        active_id = self.session.active_conversation_id
        if active_id:
            messages = await self.store.fetch_messages(active_id)
            if self.session.active_conversation_id != active_id:
                logger.debug(f"Active conversation changed during poll, dropping {active_id} page")
                return
            for message in messages:
                await self._merge_active_message(message)

    async def refresh(self):
        """Recompute unread counts and reload the conversation list."""
        counts = await self.tracker.get_unread_counts()
        summaries = await self.directory.list_conversations(counts)
        for summary in summaries:
            if summary.last_message is not None:
                self._mark_seen(summary.last_message.id)
        self.session.conversations = summaries

    # ============= Event Handling =============

    async def handle_event(self, event: ChangeEvent):
        """Apply one change event to the session state."""
        user_id = self.session.require_user()

        if event.collection == Collection.MESSAGES:
            message = event.message()
            if user_id not in (message.sender_id, message.recipient_id):
                return
            if event.type == ChangeType.INSERT:
                await self._on_message_insert(message)
            else:
                await self._on_message_update(message)
        elif event.collection == Collection.CONVERSATIONS:
            conversation = event.conversation()
            if conversation.has_participant(user_id):
                await self._on_conversation_change(conversation)

    async def _on_message_insert(self, message: Message):
        if self.active.is_active(message.conversation_id):
            added = await self._merge_active_message(message)
            await self._apply_to_conversation_list(message, count_unread=False)
        else:
            added = await self._apply_to_conversation_list(message, count_unread=True)
            if added and message.recipient_id == self.session.user_id and not message.read:
                await self.tracker.increment(message.conversation_id)

        if added:
            await self._emit(SessionEventType.MESSAGE_NEW, message.model_dump(mode="json"))

    async def _merge_active_message(self, message: Message) -> bool:
        """Add a message to the displayed list and acknowledge it if addressed to us.

        The active conversation can change while the read write is in flight,
        so it is checked again before touching the displayed list.
        """
        if not self.active.is_active(message.conversation_id):
            return False
        added = self.session.add_message(message)
        if message.recipient_id == self.session.user_id and not message.read:
            self.active.note_unpersisted(message.id)
            try:
                await self.tracker.mark_message_read(message.id)
            except TransientNetworkError as e:
                logger.warning(f"Could not mark {message.id} read, will retry on close: {e}")
                return added
            self.active.note_persisted(message.id)
            if self.active.is_active(message.conversation_id):
                self.session.add_message(message.model_copy(update={"read": True}))
        return added

    def _mark_seen(self, message_id: str) -> bool:
        """Remember a message id; returns False if it was already remembered."""
        if message_id in self._seen_message_ids:
            self._seen_message_ids.move_to_end(message_id)
            return False
        self._seen_message_ids[message_id] = None
        while len(self._seen_message_ids) > self.seen_window:
            self._seen_message_ids.popitem(last=False)
        return True

    async def _apply_to_conversation_list(self, message: Message, count_unread: bool) -> bool:
        """Update the list entry for a message's conversation.

        Returns False for a message id that was already applied.
        """
        if not self._mark_seen(message.id):
            return False

        summary = self.session.find_summary(message.conversation_id)
        if summary is None:
            conversation = await self.datastore.get_conversation(message.conversation_id)
            if conversation is None:
                return True
            summary = ConversationSummary(
                conversation=conversation,
                other_participant_id=conversation.other_participant(self.session.require_user()),
            )
            self.session.conversations.append(summary)

        if summary.last_message is None or message.sort_key >= summary.last_message.sort_key:
            summary.last_message = message
        if message.created_at > summary.conversation.updated_at:
            summary.conversation = summary.conversation.model_copy(
                update={"updated_at": message.created_at}
            )
        if count_unread and message.recipient_id == self.session.user_id and not message.read:
            summary.unread_count += 1

        self.session.sort_conversations()
        return True

    async def _on_message_update(self, message: Message):
        if self.active.is_active(message.conversation_id):
            self.session.add_message(message)
        await self.tracker.get_unread_counts()
        if message.read:
            await self._emit(
                SessionEventType.MESSAGE_READ,
                {"message_id": message.id, "conversation_id": message.conversation_id},
            )

    async def _on_conversation_change(self, conversation: Conversation):
        summary = self.session.find_summary(conversation.id)
        if summary is None:
            summary = ConversationSummary(
                conversation=conversation,
                other_participant_id=conversation.other_participant(self.session.require_user()),
                unread_count=self.tracker.cached.get(conversation.id) if self.tracker.cached else 0,
            )
            self.session.conversations.append(summary)
        elif conversation.updated_at >= summary.conversation.updated_at:
            summary.conversation = conversation

        self.session.sort_conversations()
        await self._emit(
            SessionEventType.CONVERSATION_UPDATED,
            summary.conversation.model_dump(mode="json"),
        )
