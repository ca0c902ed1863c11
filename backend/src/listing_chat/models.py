"""API-specific request and response models."""

from pydantic import BaseModel, Field

from chat_models import Conversation, ConversationSummary, Message, UnreadCounts


class EnsureConversationRequest(BaseModel):
    """Request to open (or create) a conversation with another user."""

    other_user_id: str = Field(..., description="User to talk to")
    listing_id: str | None = Field(None, description="Listing the conversation is about")


class EnsureConversationResponse(BaseModel):
    conversation_id: str


class ConversationResponse(BaseModel):
    """Response model for conversation with messages."""

    conversation: Conversation
    messages: list[Message] = Field(default_factory=list)


class ConversationListResponse(BaseModel):
    """Response model for the user's conversation list."""

    conversations: list[ConversationSummary]
    total: int
    unread: UnreadCounts


class SendMessageRequest(BaseModel):
    """Request model for sending a message."""

    content: str = Field(..., description="Message text")
    client_token: str | None = Field(
        None, description="Idempotency token; retries with the same token do not duplicate"
    )


class MarkReadResponse(BaseModel):
    conversation_id: str
    marked: int
    unread: UnreadCounts


class SetActiveRequest(BaseModel):
    conversation_id: str


class ActiveConversationResponse(BaseModel):
    session_id: str
    conversation_id: str | None
    unread: UnreadCounts | None = None
