"""FastAPI application for listing chat."""

import logging
import uuid
from datetime import datetime

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chat_models import Message, UnreadCounts
from listing_chat.auth import get_user_id
from listing_chat.client import ChatClient
from listing_chat.config import settings
from listing_chat.db import db
from listing_chat.errors import MessagingError, NotParticipant
from listing_chat.models import (
    ActiveConversationResponse,
    ConversationListResponse,
    ConversationResponse,
    EnsureConversationRequest,
    EnsureConversationResponse,
    MarkReadResponse,
    SendMessageRequest,
    SetActiveRequest,
)
from listing_chat.session import ChatSession, SessionRegistry
from listing_chat.sse import create_sse_response, session_event_stream

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Listing Chat API",
    description="Conversations, messages and unread counts for listing classifieds",
    version="0.1.0",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.datastore = db
app.state.sessions = SessionRegistry()


@app.on_event("startup")
async def startup_event():
    """Connect the datastore on startup."""
    logging.basicConfig(level=settings.log_level)
    await app.state.datastore.connect()


@app.on_event("shutdown")
async def shutdown_event():
    """Close sessions and the datastore on shutdown."""
    await app.state.sessions.close_all()
    await app.state.datastore.disconnect()


@app.exception_handler(MessagingError)
async def messaging_error_handler(request: Request, exc: MessagingError):
    """Map messaging errors to JSON responses."""
    if exc.retryable:
        logger.warning(f"{request.method} {request.url.path} failed: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error": exc.code, "retryable": exc.retryable},
    )


async def get_client(
    request: Request,
    user_id: str = Depends(get_user_id),
    session_id: str | None = Header(None, alias="X-Session-ID"),
) -> ChatClient:
    """Chat client for the request.

    With X-Session-ID the session's client is used, so its active
    conversation suppresses unread counts. Without it a throwaway session is used.
    """
    datastore = request.app.state.datastore
    if session_id:
        return await request.app.state.sessions.get_or_create(session_id, user_id, datastore)
    return ChatClient(datastore, ChatSession(user_id=user_id))


async def get_session_client(
    request: Request,
    user_id: str = Depends(get_user_id),
    session_id: str = Header(..., alias="X-Session-ID"),
) -> ChatClient:
    """Chat client for endpoints that act on the session itself."""
    return await request.app.state.sessions.get_or_create(
        session_id, user_id, request.app.state.datastore
    )


# ============= Health & Info =============


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Listing Chat API", "version": "0.1.0"}


@app.get("/health")
async def health(request: Request):
    """Health check endpoint."""
    return {"status": "healthy", "sessions": len(request.app.state.sessions)}


# ============= Conversation Endpoints =============


@app.post("/conversations", response_model=EnsureConversationResponse)
async def ensure_conversation(
    body: EnsureConversationRequest,
    client: ChatClient = Depends(get_client),
):
    """Get or create the conversation with another user about a listing."""
    conversation_id = await client.ensure_conversation(body.other_user_id, body.listing_id)
    return EnsureConversationResponse(conversation_id=conversation_id)


@app.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(client: ChatClient = Depends(get_client)):
    """List the user's conversations, most recently active first."""
    conversations = await client.list_conversations()
    return ConversationListResponse(
        conversations=conversations,
        total=len(conversations),
        unread=client.session.unread,
    )


@app.get("/conversations/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(conversation_id: str, client: ChatClient = Depends(get_client)):
    """Get a conversation with its messages."""
    conversation = await client.get_conversation(conversation_id)
    messages = await client.fetch_messages(conversation_id)
    return ConversationResponse(conversation=conversation, messages=messages)


@app.get("/conversations/{conversation_id}/messages", response_model=list[Message])
async def list_messages(
    conversation_id: str,
    before: datetime | None = None,
    limit: int | None = Query(None, ge=1, le=500),
    client: ChatClient = Depends(get_client),
):
    """Messages in chat order; with limit, the page just older than `before`."""
    return await client.fetch_messages(conversation_id, before=before, limit=limit)


@app.post("/conversations/{conversation_id}/messages", response_model=Message)
async def send_message(
    conversation_id: str,
    body: SendMessageRequest,
    client: ChatClient = Depends(get_client),
):
    """Send a message as the authenticated user."""
    return await client.send(conversation_id, body.content, body.client_token)


@app.post("/conversations/{conversation_id}/read", response_model=MarkReadResponse)
async def mark_conversation_read(
    conversation_id: str,
    client: ChatClient = Depends(get_client),
):
    """Mark the user's unread messages in a conversation as read."""
    marked = await client.mark_read(conversation_id)
    return MarkReadResponse(
        conversation_id=conversation_id,
        marked=marked,
        unread=client.session.unread,
    )


# ============= Unread Endpoints =============


@app.get("/unread", response_model=UnreadCounts)
async def get_unread(client: ChatClient = Depends(get_client)):
    """Per-conversation and total unread counts (for badges)."""
    return await client.get_unread_counts()


# ============= Session Endpoints =============


@app.put("/session/active", response_model=ActiveConversationResponse)
async def set_active_conversation(
    body: SetActiveRequest,
    client: ChatClient = Depends(get_session_client),
):
    """Mark a conversation as open on screen for this session."""
    await client.open_conversation(body.conversation_id)
    return ActiveConversationResponse(
        session_id=client.session.session_id,
        conversation_id=client.active.get_active(),
        unread=client.session.unread,
    )


@app.delete("/session/active", response_model=ActiveConversationResponse)
async def clear_active_conversation(client: ChatClient = Depends(get_session_client)):
    """The session navigated away from its open conversation."""
    await client.close_conversation()
    return ActiveConversationResponse(
        session_id=client.session.session_id,
        conversation_id=None,
        unread=client.session.unread,
    )


@app.delete("/session")
async def close_session(
    request: Request,
    user_id: str = Depends(get_user_id),
    session_id: str = Header(..., alias="X-Session-ID"),
):
    """Tear down a session and its listener."""
    sessions: SessionRegistry = request.app.state.sessions
    client = sessions.get(session_id)
    if client is not None:
        if client.session.user_id != user_id:
            raise NotParticipant("Session belongs to another user")
        await sessions.close(session_id)
    return {"status": "closed", "session_id": session_id}


# ============= Realtime Endpoints =============


@app.get("/events")
async def events(
    request: Request,
    user_id: str = Depends(get_user_id),
    session_id: str | None = Header(None, alias="X-Session-ID"),
):
    """Stream session updates (new messages, unread counts, conversation order)."""
    session_id = session_id or str(uuid.uuid4())
    sessions: SessionRegistry = request.app.state.sessions
    client = await sessions.get_or_create(session_id, user_id, request.app.state.datastore)
    sessions.mark_streaming(session_id)

    async def stream():
        try:
            async for chunk in session_event_stream(
                client, request, heartbeat_interval=settings.sse_heartbeat_seconds
            ):
                yield chunk
        finally:
            await sessions.close(session_id)

    return create_sse_response(stream())


# ============= Run =============


def run():
    """Run the application."""
    import uvicorn

    uvicorn.run(
        "listing_chat.api:app",
        host=settings.host,
        port=settings.port,
        reload=True,
    )


if __name__ == "__main__":
    run()
