"""Unit tests for unread tracking and active-conversation suppression."""

import pytest
from chat_models import ChangeEvent, ChangeType
from listing_chat.errors import TransientNetworkError


async def _unread_in_storage(datastore, user_id: str, exclude: str | None = None) -> int:
    return sum(
        1
        for m in datastore.messages.values()
        if m.recipient_id == user_id and not m.read and m.conversation_id != exclude
    )


class TestUnreadCounts:
    """Test count computation and read acknowledgement."""

    @pytest.mark.asyncio
    async def test_counts_grouped_by_conversation(self, make_client):
        """Test per-conversation grouping and the derived total."""
        bob = make_client("u2")
        first = await make_client("u1").ensure_conversation("u2", "L1")
        second = await make_client("u3").ensure_conversation("u2", "L2")
        await make_client("u1").send(first, "one")
        await make_client("u1").send(first, "two")
        await make_client("u3").send(second, "three")

        counts = await bob.get_unread_counts()

        assert counts.by_conversation == {first: 2, second: 1}
        assert counts.total == 3
        assert counts.conversations_with_unread == 2
        assert bob.session.unread == counts

    @pytest.mark.asyncio
    async def test_own_messages_not_counted(self, make_client):
        """Test that the sender has nothing unread."""
        alice = make_client("u1")
        conversation_id = await alice.ensure_conversation("u2")
        await alice.send(conversation_id, "hello")

        counts = await alice.get_unread_counts()

        assert counts.by_conversation == {}
        assert counts.total == 0

    @pytest.mark.asyncio
    async def test_total_matches_storage_excluding_active(self, datastore, make_client):
        """Test that the badge total equals unread rows outside the active conversation."""
        bob = make_client("u2")
        conversations = []
        for sender in ("u1", "u3", "u4"):
            conversation_id = await make_client(sender).ensure_conversation("u2")
            conversations.append(conversation_id)
            for i in range(3):
                await make_client(sender).send(conversation_id, f"{sender}-{i}")

        counts = await bob.get_unread_counts()
        assert counts.total == await _unread_in_storage(datastore, "u2")

        await bob.active.set_active(conversations[1])
        # A message that lands while active, before any listener acknowledges it
        await make_client("u3").send(conversations[1], "late")
        counts = await bob.get_unread_counts()

        assert conversations[1] not in counts.by_conversation
        assert counts.suppressed_conversation_id == conversations[1]
        assert counts.total == await _unread_in_storage(
            datastore, "u2", exclude=conversations[1]
        )
        assert sum(counts.by_conversation.values()) == counts.total

    @pytest.mark.asyncio
    async def test_mark_read_is_idempotent(self, datastore, make_client):
        """Test that marking twice leaves the same rows read."""
        bob = make_client("u2")
        conversation_id = await make_client("u1").ensure_conversation("u2")
        for i in range(3):
            await make_client("u1").send(conversation_id, f"m{i}")

        first = await bob.mark_read(conversation_id)
        read_after_first = {m.id for m in datastore.messages.values() if m.read}
        second = await bob.mark_read(conversation_id)
        read_after_second = {m.id for m in datastore.messages.values() if m.read}

        assert first == 3
        assert second == 0
        assert read_after_first == read_after_second
        assert bob.session.unread.total == 0

    @pytest.mark.asyncio
    async def test_mark_read_only_touches_own_messages(self, datastore, make_client):
        """Test that marking read leaves messages addressed to the other user alone."""
        alice, bob = make_client("u1"), make_client("u2")
        conversation_id = await alice.ensure_conversation("u2")
        await alice.send(conversation_id, "to bob")
        await bob.send(conversation_id, "to alice")

        await bob.mark_read(conversation_id)

        assert (await alice.get_unread_counts()).by_conversation == {conversation_id: 1}

    @pytest.mark.asyncio
    async def test_change_callbacks_receive_counts(self, make_client):
        """Test that registered callbacks see every recompute."""
        bob = make_client("u2")
        seen = []

        async def record(counts):
            seen.append(counts.total)

        bob.unread.on_change(record)
        conversation_id = await make_client("u1").ensure_conversation("u2")
        await make_client("u1").send(conversation_id, "hello")

        await bob.get_unread_counts()
        await bob.mark_read(conversation_id)

        assert seen == [1, 0]


class TestActiveConversation:
    """Test the active-conversation suppressor."""

    @pytest.mark.asyncio
    async def test_first_contact_scenario(self, datastore, make_client):
        """Test two users, one listing, first contact."""
        alice, bob = make_client("u1"), make_client("u2")

        conversation_id = await alice.ensure_conversation("u2", "L1")
        created = await datastore.get_conversation(conversation_id)

        message = await alice.send(conversation_id, "Hi, is this available?")
        assert message.recipient_id == "u2"
        assert (await datastore.get_conversation(conversation_id)).updated_at > created.updated_at

        assert (await bob.get_unread_counts()).by_conversation == {conversation_id: 1}

        await bob.open_conversation(conversation_id)
        assert bob.active.get_active() == conversation_id
        assert (await bob.get_unread_counts()).get(conversation_id) == 0
        assert [m.content for m in bob.session.messages] == ["Hi, is this available?"]

        reply = await bob.send(conversation_id, "Yes, still available!")
        assert reply.recipient_id == "u1"
        assert (await alice.get_unread_counts()).by_conversation == {conversation_id: 1}

        await bob.close_conversation()
        assert (await bob.get_unread_counts()).by_conversation == {}

    @pytest.mark.asyncio
    async def test_set_active_marks_read_in_storage(self, datastore, make_client):
        """Test that opening a conversation makes the suppression durable."""
        bob = make_client("u2")
        conversation_id = await make_client("u1").ensure_conversation("u2")
        await make_client("u1").send(conversation_id, "hello")

        await bob.active.set_active(conversation_id)

        assert all(m.read for m in datastore.messages.values())
        assert bob.session.unread.by_conversation == {}

    @pytest.mark.asyncio
    async def test_switching_conversations_keeps_one_active(self, make_client):
        """Test that at most one conversation is active per session."""
        bob = make_client("u2")
        first = await make_client("u1").ensure_conversation("u2")
        second = await make_client("u3").ensure_conversation("u2")
        await make_client("u1").send(first, "from u1")

        await bob.active.set_active(second)
        counts_before = await bob.get_unread_counts()
        await bob.active.set_active(first)

        assert bob.active.get_active() == first
        assert counts_before.get(first) == 1
        assert (await bob.get_unread_counts()).by_conversation == {}

    @pytest.mark.asyncio
    async def test_clear_active_flushes_pending_reads(self, datastore, make_client):
        """Test that a read lost while viewing is persisted on leave."""
        alice, bob = make_client("u1"), make_client("u2")
        conversation_id = await alice.ensure_conversation("u2")
        await bob.open_conversation(conversation_id)

        message = await alice.send(conversation_id, "are you there?")
        datastore.fail_writes = 1
        await bob.listener.handle_event(ChangeEvent.for_message(ChangeType.INSERT, message))

        assert message.id in bob.session.unpersisted_reads
        assert datastore.messages[message.id].read is False

        await bob.close_conversation()

        assert datastore.messages[message.id].read is True
        assert bob.active.get_active() is None
        assert bob.session.unpersisted_reads == set()
        assert bob.session.unread.by_conversation == {}

    @pytest.mark.asyncio
    async def test_clear_active_clears_flag_even_when_flush_fails(self, datastore, make_client):
        """Test that leaving still clears the flag if the final write fails."""
        alice, bob = make_client("u1"), make_client("u2")
        conversation_id = await alice.ensure_conversation("u2")
        await bob.open_conversation(conversation_id)
        bob.active.note_unpersisted("pending")
        datastore.fail_writes = 1

        with pytest.raises(TransientNetworkError):
            await bob.close_conversation()

        assert bob.active.get_active() is None

    @pytest.mark.asyncio
    async def test_clear_without_active_is_noop(self, make_client):
        """Test that clearing twice does nothing."""
        bob = make_client("u2")

        await bob.close_conversation()

        assert bob.active.get_active() is None
        assert bob.session.unread is None
