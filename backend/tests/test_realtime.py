"""Unit tests for the change feed multiplexer."""

import asyncio

import pytest
from chat_models import ChangeEvent, ChangeType, Collection, Conversation, Message
from listing_chat.realtime import ChangeFeed, FeedClosed


def _message(sender: str = "u1", recipient: str = "u2") -> Message:
    return Message(conversation_id="c1", sender_id=sender, recipient_id=recipient, content="hi")


class TestChangeFeed:
    """Test fan-out and connection handling."""

    @pytest.mark.asyncio
    async def test_overlapping_filters_deliver_once(self):
        """Test that a subscriber matching several filters gets one copy."""
        feed = ChangeFeed()
        subscription = await feed.subscribe(
            [
                (Collection.MESSAGES, "recipient_id", "u2"),
                (Collection.MESSAGES, "conversation_id", "c1"),
            ]
        )

        delivered = await feed.publish(ChangeEvent.for_message(ChangeType.INSERT, _message()))

        assert delivered == 1
        assert subscription.queue.qsize() == 1

    @pytest.mark.asyncio
    async def test_event_fans_out_to_each_subscriber(self):
        """Test that two matching subscribers both receive the event."""
        feed = ChangeFeed()
        recipient = await feed.subscribe([(Collection.MESSAGES, "recipient_id", "u2")])
        sender = await feed.subscribe([(Collection.MESSAGES, "sender_id", "u1")])
        event = ChangeEvent.for_message(ChangeType.INSERT, _message())

        assert await feed.publish(event) == 2
        assert (await recipient.get()).id == event.id
        assert (await sender.get()).id == event.id

    @pytest.mark.asyncio
    async def test_non_matching_event_not_delivered(self):
        """Test that filters are equality on the named field and collection."""
        feed = ChangeFeed()
        subscription = await feed.subscribe([(Collection.MESSAGES, "recipient_id", "u3")])

        assert await feed.publish(ChangeEvent.for_message(ChangeType.INSERT, _message())) == 0
        conversation = Conversation(participant_a_id="u3", participant_b_id="u4")
        assert await feed.publish(
            ChangeEvent.for_conversation(ChangeType.INSERT, conversation)
        ) == 0
        assert subscription.queue.empty()

    @pytest.mark.asyncio
    async def test_participant_filter_matches_either_column(self):
        """Test the participant filter on conversation rows."""
        feed = ChangeFeed()
        subscription = await feed.subscribe([(Collection.CONVERSATIONS, "participant", "u2")])

        first = Conversation(participant_a_id="u2", participant_b_id="u1")
        second = Conversation(participant_a_id="u3", participant_b_id="u2")
        other = Conversation(participant_a_id="u3", participant_b_id="u4")
        for conversation in (first, second, other):
            await feed.publish(ChangeEvent.for_conversation(ChangeType.UPDATE, conversation))

        received = [(await subscription.get()).conversation().id for _ in range(2)]
        assert received == [first.id, second.id]
        assert subscription.queue.empty()

    @pytest.mark.asyncio
    async def test_disconnect_raises_feed_closed(self):
        """Test that consumers see FeedClosed when the feed drops."""
        feed = ChangeFeed()
        subscription = await feed.subscribe([(Collection.MESSAGES, "recipient_id", "u2")])
        waiter = asyncio.create_task(subscription.get())
        await asyncio.sleep(0)

        await feed.disconnect("test")

        with pytest.raises(FeedClosed):
            await waiter
        assert feed.subscription_count == 0
        with pytest.raises(FeedClosed):
            await feed.subscribe([(Collection.MESSAGES, "recipient_id", "u2")])

    @pytest.mark.asyncio
    async def test_reconnect_allows_new_subscriptions(self):
        """Test that a reconnected feed accepts subscribers again."""
        feed = ChangeFeed()
        await feed.disconnect("test")

        feed.reconnect()
        subscription = await feed.subscribe([(Collection.MESSAGES, "recipient_id", "u2")])

        assert await feed.publish(ChangeEvent.for_message(ChangeType.INSERT, _message())) == 1
        assert (await subscription.get()).message().content == "hi"

    @pytest.mark.asyncio
    async def test_close_unsubscribes(self):
        """Test that a closed subscription stops receiving and raises on get."""
        feed = ChangeFeed()
        subscription = await feed.subscribe([(Collection.MESSAGES, "recipient_id", "u2")])

        await subscription.close()

        assert feed.subscription_count == 0
        assert await feed.publish(ChangeEvent.for_message(ChangeType.INSERT, _message())) == 0
        with pytest.raises(FeedClosed):
            await subscription.get()


class TestChangeEvent:
    """Test change event payload helpers."""

    def test_message_round_trips_through_payload(self):
        """Test that the payload parses back into the row model."""
        message = _message()

        event = ChangeEvent.for_message(ChangeType.INSERT, message)

        assert event.new["recipient_id"] == "u2"
        assert event.message() == message
        assert event.matches("sender_id", "u1")
        assert not event.matches("sender_id", "u2")
