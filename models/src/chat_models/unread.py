"""Unread count models."""

from datetime import datetime
from pydantic import BaseModel, Field, computed_field

from chat_models.conversation import _now


class UnreadCounts(BaseModel):
    """Per-conversation unread counts for one user.

    The active conversation, if any, is never present in by_conversation.
    """

    user_id: str = Field(..., description="User the counts belong to")
    by_conversation: dict[str, int] = Field(
        default_factory=dict, description="conversation_id -> unread count"
    )
    suppressed_conversation_id: str | None = Field(
        None, description="Active conversation excluded from the counts"
    )
    computed_at: datetime = Field(default_factory=_now, description="Computation time")

    @computed_field
    @property
    def total(self) -> int:
        return sum(self.by_conversation.values())

    @computed_field
    @property
    def conversations_with_unread(self) -> int:
        return sum(1 for count in self.by_conversation.values() if count > 0)

    def get(self, conversation_id: str) -> int:
        return self.by_conversation.get(conversation_id, 0)
