"""Server-Sent Events support for real-time updates."""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncGenerator

from fastapi import Request
from fastapi.responses import StreamingResponse

from chat_models import SessionEventType, SessionNotice
from listing_chat.client import ChatClient

logger = logging.getLogger(__name__)


@dataclass
class SSEEvent:
    """An SSE event to send to clients."""

    event: str
    data: dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])

    def encode(self) -> str:
        """Encode as SSE format."""
        lines = [
            f"id: {self.id}",
            f"event: {self.event}",
            f"data: {json.dumps(self.data)}",
            "",  # Empty line to end the event
        ]
        return "\n".join(lines) + "\n"

    @classmethod
    def from_notice(cls, notice: SessionNotice) -> "SSEEvent":
        return cls(event=notice.type.value, data=notice.data)


async def session_event_stream(
    client: ChatClient,
    request: Request,
    heartbeat_interval: int = 30,
) -> AsyncGenerator[str, None]:
    """Generate SSE events for a chat session.

    Starts the session's live listener, relays its notices, and sends heartbeat
    pings every heartbeat_interval seconds to keep the connection alive.
    """
    queue: asyncio.Queue = asyncio.Queue()

    async def enqueue(notice: SessionNotice):
        queue.put_nowait(notice)

    client.listener.on_event(enqueue)
    try:
        await client.start()

        # Send initial connected event
        yield SSEEvent(
            event="connected",
            data={
                "user_id": client.session.user_id,
                "session_id": client.session.session_id,
                "state": client.listener.state.value,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        ).encode()

        if client.session.unread is not None:
            yield SSEEvent(
                event=SessionEventType.UNREAD_UPDATED.value,
                data=client.session.unread.model_dump(mode="json"),
            ).encode()

        while True:
            # Check if client disconnected
            if await request.is_disconnected():
                break

            try:
                # Wait for event with timeout for heartbeat
                notice = await asyncio.wait_for(queue.get(), timeout=heartbeat_interval)
                yield SSEEvent.from_notice(notice).encode()
            except asyncio.TimeoutError:
                yield SSEEvent(
                    event=SessionEventType.HEARTBEAT.value,
                    data={"timestamp": datetime.now(timezone.utc).isoformat()},
                ).encode()
    finally:
        client.listener.remove_callback(enqueue)
        logger.info(f"Event stream closed for session {client.session.session_id}")


def create_sse_response(generator: AsyncGenerator[str, None]) -> StreamingResponse:
    """Create an SSE StreamingResponse."""
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
