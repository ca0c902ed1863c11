"""Shared fixtures for messaging tests."""

import asyncio

import pytest
from listing_chat.client import ChatClient
from listing_chat.db.memory import InMemoryDatastore
from listing_chat.session import ChatSession


@pytest.fixture
def datastore():
    """A fresh in-memory datastore per test."""
    return InMemoryDatastore()


@pytest.fixture
def make_client(datastore):
    """Factory for a chat client bound to a new session for a user."""

    def _make(user_id: str | None, **listener_options) -> ChatClient:
        return ChatClient(datastore, ChatSession(user_id=user_id), **listener_options)

    return _make


@pytest.fixture
def wait_until():
    """Poll a condition until it holds or a timeout expires."""

    async def _wait(predicate, timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(0.005)

    return _wait
