"""Datastore selection."""

from listing_chat.config import settings
from listing_chat.db.base import Datastore
from listing_chat.db.memory import InMemoryDatastore
from listing_chat.db.postgres import PostgresDatastore


def create_datastore() -> Datastore:
    """PostgreSQL when a database host is configured, otherwise in-memory."""
    if settings.database_url:
        return PostgresDatastore(settings.database_url, settings.notify_channel)
    return InMemoryDatastore()


# Global datastore instance
db = create_datastore()

__all__ = ["Datastore", "InMemoryDatastore", "PostgresDatastore", "create_datastore", "db"]
