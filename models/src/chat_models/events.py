"""Realtime change feed models."""

from datetime import datetime
from enum import Enum
from typing import Any
from pydantic import BaseModel, Field

from chat_models.conversation import Conversation, Message, _now, _uuid


class Collection(str, Enum):
    """Collections that emit change events."""

    CONVERSATIONS = "conversations"
    MESSAGES = "messages"


class ChangeType(str, Enum):
    """Row-level change kinds."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"


class ChangeEvent(BaseModel):
    """A row change delivered by the datastore (at least once)."""

    id: str = Field(default_factory=_uuid, description="Delivery ID")
    collection: Collection = Field(..., description="Source collection")
    type: ChangeType = Field(..., description="Change kind")
    new: dict[str, Any] = Field(..., description="Full new row payload")
    received_at: datetime = Field(default_factory=_now, description="Delivery time")

    @classmethod
    def for_message(cls, change: ChangeType, message: Message) -> "ChangeEvent":
        return cls(
            collection=Collection.MESSAGES,
            type=change,
            new=message.model_dump(mode="json"),
        )

    @classmethod
    def for_conversation(
        cls, change: ChangeType, conversation: Conversation
    ) -> "ChangeEvent":
        return cls(
            collection=Collection.CONVERSATIONS,
            type=change,
            new=conversation.model_dump(mode="json"),
        )

    def message(self) -> Message:
        return Message.model_validate(self.new)

    def conversation(self) -> Conversation:
        return Conversation.model_validate(self.new)

    def matches(self, field: str, value: str) -> bool:
        """Equality filter on the row payload.

        "participant" is an OR-of-equality over both conversation participant columns.
        """
        if field == "participant":
            return value in (
                self.new.get("participant_a_id"),
                self.new.get("participant_b_id"),
            )
        return self.new.get(field) == value


class SessionEventType(str, Enum):
    """Notices pushed to a session's client."""

    MESSAGE_NEW = "message:new"
    MESSAGE_READ = "message:read"
    UNREAD_UPDATED = "unread:updated"
    CONVERSATION_UPDATED = "conversation:updated"
    STATUS = "status"
    HEARTBEAT = "heartbeat"


class SessionNotice(BaseModel):
    """A reconciled update for one session."""

    type: SessionEventType = Field(..., description="Notice kind")
    data: dict[str, Any] = Field(default_factory=dict, description="Notice payload")
