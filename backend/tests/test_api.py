"""Tests for the HTTP surface and the session event stream."""

import asyncio

import pytest
from fastapi.testclient import TestClient
from listing_chat.api import app
from listing_chat.db import db
from listing_chat.session import SessionRegistry
from listing_chat.sse import session_event_stream


def _as(user_id: str, session_id: str | None = None) -> dict[str, str]:
    headers = {"X-User-ID": user_id}
    if session_id:
        headers["X-Session-ID"] = session_id
    return headers


@pytest.fixture
def api(datastore):
    """Test client backed by the in-memory datastore."""
    app.state.datastore = datastore
    app.state.sessions = SessionRegistry()
    with TestClient(app) as client:
        yield client
    app.state.datastore = db


def _open(api, user_id: str, other_id: str, listing_id: str | None = None) -> str:
    response = api.post(
        "/conversations",
        json={"other_user_id": other_id, "listing_id": listing_id},
        headers=_as(user_id),
    )
    assert response.status_code == 200
    return response.json()["conversation_id"]


class TestConversationEndpoints:
    """Test the REST endpoints end to end."""

    def test_health(self, api):
        """Test the health endpoint."""
        response = api.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_missing_identity_rejected(self, api):
        """Test that requests without X-User-ID get 401."""
        response = api.get("/unread")

        assert response.status_code == 401
        assert response.json()["error"] == "NotAuthenticated"

    def test_message_flow(self, api):
        """Test ensure, send, unread and mark read across two users."""
        conversation_id = _open(api, "u1", "u2", "L1")
        assert _open(api, "u2", "u1", "L1") == conversation_id

        sent = api.post(
            f"/conversations/{conversation_id}/messages",
            json={"content": "Hi, is this available?"},
            headers=_as("u1"),
        )
        assert sent.status_code == 200
        assert sent.json()["recipient_id"] == "u2"

        unread = api.get("/unread", headers=_as("u2")).json()
        assert unread["by_conversation"] == {conversation_id: 1}
        assert unread["total"] == 1

        listing = api.get("/conversations", headers=_as("u2")).json()
        assert listing["total"] == 1
        assert listing["conversations"][0]["other_participant_id"] == "u1"
        assert listing["conversations"][0]["unread_count"] == 1

        marked = api.post(f"/conversations/{conversation_id}/read", headers=_as("u2")).json()
        assert marked["marked"] == 1
        assert marked["unread"]["total"] == 0

        detail = api.get(f"/conversations/{conversation_id}", headers=_as("u1")).json()
        assert [m["read"] for m in detail["messages"]] == [True]

    def test_self_target_rejected(self, api):
        """Test that opening a conversation with yourself returns 400."""
        response = api.post(
            "/conversations", json={"other_user_id": "u1"}, headers=_as("u1")
        )

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidTarget"

    def test_empty_message_rejected(self, api):
        """Test that whitespace-only content returns EmptyMessage."""
        conversation_id = _open(api, "u1", "u2")

        response = api.post(
            f"/conversations/{conversation_id}/messages",
            json={"content": "   "},
            headers=_as("u1"),
        )

        assert response.status_code == 422
        assert response.json()["error"] == "EmptyMessage"
        assert response.json()["retryable"] is False

    def test_outsider_and_missing(self, api):
        """Test 403 for non-participants and 404 for unknown conversations."""
        conversation_id = _open(api, "u1", "u2")

        outsider = api.get(f"/conversations/{conversation_id}", headers=_as("u3"))
        missing = api.get("/conversations/nope", headers=_as("u1"))

        assert outsider.status_code == 403
        assert outsider.json()["error"] == "NotParticipant"
        assert missing.status_code == 404

    def test_transient_failure_is_retryable(self, api, datastore):
        """Test that datastore failures map to 503 with retryable set."""
        conversation_id = _open(api, "u1", "u2")
        datastore.fail_writes = 1

        response = api.post(
            f"/conversations/{conversation_id}/messages",
            json={"content": "hello"},
            headers=_as("u1"),
        )

        assert response.status_code == 503
        assert response.json()["retryable"] is True

    def test_message_paging(self, api):
        """Test limit and before query parameters."""
        conversation_id = _open(api, "u1", "u2")
        for i in range(5):
            api.post(
                f"/conversations/{conversation_id}/messages",
                json={"content": f"m{i}"},
                headers=_as("u1"),
            )

        newest = api.get(
            f"/conversations/{conversation_id}/messages",
            params={"limit": 2},
            headers=_as("u2"),
        ).json()
        older = api.get(
            f"/conversations/{conversation_id}/messages",
            params={"limit": 2, "before": newest[0]["created_at"]},
            headers=_as("u2"),
        ).json()

        assert [m["content"] for m in newest] == ["m3", "m4"]
        assert [m["content"] for m in older] == ["m1", "m2"]


class TestSessionEndpoints:
    """Test per-session active conversation handling."""

    def test_active_conversation_suppresses_unread(self, api):
        """Test that the open conversation is excluded for that session only."""
        conversation_id = _open(api, "u1", "u2")
        api.post(
            f"/conversations/{conversation_id}/messages",
            json={"content": "first"},
            headers=_as("u1"),
        )

        opened = api.put(
            "/session/active",
            json={"conversation_id": conversation_id},
            headers=_as("u2", "s1"),
        ).json()
        assert opened["session_id"] == "s1"
        assert opened["conversation_id"] == conversation_id
        assert opened["unread"]["by_conversation"] == {}

        api.post(
            f"/conversations/{conversation_id}/messages",
            json={"content": "second"},
            headers=_as("u1"),
        )

        in_session = api.get("/unread", headers=_as("u2", "s1")).json()
        other_tab = api.get("/unread", headers=_as("u2")).json()
        assert in_session["by_conversation"] == {}
        assert in_session["suppressed_conversation_id"] == conversation_id
        assert other_tab["by_conversation"] == {conversation_id: 1}

        cleared = api.delete("/session/active", headers=_as("u2", "s1"))
        assert cleared.status_code == 200
        assert cleared.json()["conversation_id"] is None

    def test_session_endpoints_require_session_header(self, api):
        """Test that session endpoints reject requests without X-Session-ID."""
        response = api.delete("/session/active", headers=_as("u2"))

        assert response.status_code == 422

    def test_open_requires_participation(self, api):
        """Test that a session cannot activate someone else's conversation."""
        conversation_id = _open(api, "u1", "u2")

        response = api.put(
            "/session/active",
            json={"conversation_id": conversation_id},
            headers=_as("u3", "s1"),
        )

        assert response.status_code == 403

    def test_session_owned_by_its_user(self, api):
        """Test that another user presenting a known session id is refused."""
        conversation_id = _open(api, "u1", "u2")
        api.put(
            "/session/active",
            json={"conversation_id": conversation_id},
            headers=_as("u2", "s1"),
        )

        hijack = api.get("/unread", headers=_as("u3", "s1"))
        close = api.delete("/session", headers=_as("u3", "s1"))

        assert hijack.status_code == 403
        assert close.status_code == 403
        session = api.app.state.sessions.get("s1")
        assert session.session.user_id == "u2"
        assert session.active.get_active() == conversation_id

    def test_close_session(self, api):
        """Test that closing a session removes it from the registry."""
        conversation_id = _open(api, "u1", "u2")
        api.put(
            "/session/active",
            json={"conversation_id": conversation_id},
            headers=_as("u2", "s1"),
        )
        assert api.get("/health").json()["sessions"] == 1

        response = api.delete("/session", headers=_as("u2", "s1"))

        assert response.status_code == 200
        assert api.get("/health").json()["sessions"] == 0


class FakeRequest:
    """Minimal stand-in for a Starlette request in stream tests."""

    def __init__(self):
        self.disconnected = False

    async def is_disconnected(self) -> bool:
        return self.disconnected


class TestEventStream:
    """Test the SSE generator for a session."""

    @pytest.mark.asyncio
    async def test_stream_relays_new_messages(self, make_client):
        """Test connected, unread snapshot, then message:new after a send."""
        alice, bob = make_client("u1"), make_client("u2")
        conversation_id = await alice.ensure_conversation("u2")
        request = FakeRequest()
        stream = session_event_stream(bob, request, heartbeat_interval=1)

        try:
            first = await asyncio.wait_for(stream.__anext__(), timeout=2)
            assert "event: connected" in first
            snapshot = await asyncio.wait_for(stream.__anext__(), timeout=2)
            assert "event: unread:updated" in snapshot

            await alice.send(conversation_id, "ping")

            seen = []
            while not any("event: message:new" in chunk for chunk in seen):
                seen.append(await asyncio.wait_for(stream.__anext__(), timeout=2))
            assert '"content": "ping"' in seen[-1]
        finally:
            await stream.aclose()
            await bob.stop()

        assert bob.listener._callbacks == []

    @pytest.mark.asyncio
    async def test_stream_ends_on_disconnect(self, make_client):
        """Test that the generator finishes once the client goes away."""
        bob = make_client("u2")
        request = FakeRequest()
        stream = session_event_stream(bob, request, heartbeat_interval=1)

        try:
            await asyncio.wait_for(stream.__anext__(), timeout=2)
            request.disconnected = True
            remaining = [chunk async for chunk in stream]
        finally:
            await bob.stop()

        assert all("event: message:new" not in chunk for chunk in remaining)
