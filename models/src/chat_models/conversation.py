"""Conversation and message models."""

from datetime import datetime, timezone
from pydantic import BaseModel, Field
import uuid


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_pair(user_a: str, user_b: str) -> tuple[str, str]:
    """Order-independent key for a pair of user ids."""
    return (user_a, user_b) if user_a <= user_b else (user_b, user_a)


class Conversation(BaseModel):
    """A thread between two users, optionally about a listing."""

    id: str = Field(default_factory=_uuid, description="Unique conversation ID")
    participant_a_id: str = Field(..., description="First participant (creator)")
    participant_b_id: str = Field(..., description="Second participant")
    listing_id: str | None = Field(None, description="Listing the conversation is about")
    created_at: datetime = Field(default_factory=_now, description="Creation timestamp")
    updated_at: datetime = Field(
        default_factory=_now, description="Last activity timestamp"
    )

    @property
    def participants(self) -> tuple[str, str]:
        return (self.participant_a_id, self.participant_b_id)

    @property
    def pair_key(self) -> tuple[str, str, str | None]:
        """Uniqueness key: normalized pair plus listing."""
        return (*normalize_pair(self.participant_a_id, self.participant_b_id), self.listing_id)

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participants

    def other_participant(self, user_id: str) -> str:
        """Return the participant that is not user_id.

        Raises:
            ValueError: If user_id is not part of this conversation

        """
        if user_id == self.participant_a_id:
            return self.participant_b_id
        if user_id == self.participant_b_id:
            return self.participant_a_id
        raise ValueError(f"User {user_id} is not in conversation {self.id}")


class Message(BaseModel):
    """A single chat message."""

    id: str = Field(default_factory=_uuid, description="Unique message ID")
    conversation_id: str = Field(..., description="Parent conversation ID")
    sender_id: str = Field(..., description="Sending user")
    recipient_id: str = Field(..., description="Receiving user")
    content: str = Field(..., description="Message text")
    read: bool = Field(False, description="Whether the recipient has read it")
    created_at: datetime = Field(default_factory=_now, description="Server timestamp")
    client_token: str | None = Field(
        None, description="Client-generated idempotency token"
    )

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.created_at, self.id)


class ConversationSummary(BaseModel):
    """A conversation list entry as seen by one user."""

    conversation: Conversation
    other_participant_id: str = Field(..., description="The other user in the thread")
    last_message: Message | None = Field(None, description="Most recent message")
    unread_count: int = Field(0, description="Unread messages for the viewing user")

    @property
    def updated_at(self) -> datetime:
        return self.conversation.updated_at
