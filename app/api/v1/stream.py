"""Server-sent event streams for live UI updates (X-API-Key).

    GET /api/rag/chat-stream/{conversation_id}
    GET /api/rag/knowledge-stream

The subscription is opened before the response starts, so nothing
published after the client connects is missed. Push is best-effort; the
read endpoints stay authoritative.
"""

import json
from datetime import datetime, timezone
from typing import Any, AsyncGenerator
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from app.api.deps import get_chat_service, get_current_tenant, get_push_channel
from app.core.config import settings
from app.core.exceptions import ConversationNotFoundError
from app.models.tenant import Tenant
from app.services.chat.push import KNOWLEDGE_TOPIC, PushChannel, Subscription, conversation_topic
from app.services.chat.service import ChatService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/rag", tags=["stream"])

_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def _sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


async def event_stream(
    request: Request,
    subscription: Subscription,
    connected: dict[str, Any],
    heartbeat_seconds: float,
) -> AsyncGenerator[str, None]:
    """Relay pushed events until the client goes away; heartbeat when idle."""
    try:
        yield _sse(connected)
        while not await request.is_disconnected():
            event = await subscription.next_event(timeout=heartbeat_seconds)
            if event is None:
                yield _sse({"type": "heartbeat", "timestamp": datetime.now(timezone.utc).isoformat()})
            else:
                yield _sse(event)
    finally:
        await subscription.close()
        logger.debug("sse_stream_closed", connected=connected.get("type"))


@router.get("/chat-stream/{conversation_id}")
async def chat_stream(
    conversation_id: UUID,
    request: Request,
    tenant: Tenant = Depends(get_current_tenant),
    chat: ChatService = Depends(get_chat_service),
    push: PushChannel = Depends(get_push_channel),
) -> StreamingResponse:
    """Live chat-response / chat-failed events for one conversation."""
    tenant_id = str(tenant.id)
    if not await chat.history(tenant_id, conversation_id):
        raise ConversationNotFoundError()

    subscription = await push.subscribe(tenant_id, conversation_topic(conversation_id))
    return StreamingResponse(
        event_stream(
            request,
            subscription,
            {"type": "connected", "conversation_id": str(conversation_id)},
            settings.sse_heartbeat_seconds,
        ),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


@router.get("/knowledge-stream")
async def knowledge_stream(
    request: Request,
    tenant: Tenant = Depends(get_current_tenant),
    push: PushChannel = Depends(get_push_channel),
) -> StreamingResponse:
    """Live document-uploaded / document-status events for the tenant."""
    subscription = await push.subscribe(str(tenant.id), KNOWLEDGE_TOPIC)
    return StreamingResponse(
        event_stream(
            request,
            subscription,
            {"type": "connected", "tenant_id": str(tenant.id)},
            settings.sse_heartbeat_seconds,
        ),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )
