"""Chat message endpoints (X-API-Key).

Sending a message only records it; the hand-off to the processing service
runs after commit as a background task. The answer arrives later through
the chat callback or the response queue.
"""

from uuid import UUID

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import (
    get_chat_service,
    get_chat_transport,
    get_current_tenant,
    get_db,
    get_push_channel,
)
from app.core.config import settings
from app.db.postgres import session_scope
from app.models.tenant import Tenant
from app.schemas.chat import (
    ChatExchangeOut,
    ChatMessageRequest,
    ChatMessageResponse,
    ConversationResponse,
    StuckExchangesResponse,
)
from app.services.chat.push import PushChannel
from app.services.chat.service import ChatService
from app.services.chat.transport import ChatTransport

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/rag", tags=["chat"])


async def _dispatch_chat_background(
    message_id: str,
    push: PushChannel,
    transport: ChatTransport,
) -> None:
    """Dispatch after the exchange has committed, with its own DB session."""
    try:
        async with session_scope() as db:
            service = ChatService(db=db, push=push, transport=transport)
            await service.dispatch(message_id)
    except Exception as e:
        logger.error("background_chat_dispatch_failed", message_id=message_id, error=str(e))


@router.post("/chat", status_code=202, response_model=ChatMessageResponse)
async def send_message(
    body: ChatMessageRequest,
    background_tasks: BackgroundTasks,
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
    chat: ChatService = Depends(get_chat_service),
    push: PushChannel = Depends(get_push_channel),
    transport: ChatTransport = Depends(get_chat_transport),
) -> ChatMessageResponse:
    """Record a user message and schedule its dispatch."""
    exchange = await chat.send_message(
        tenant_id=str(tenant.id),
        message=body.message,
        conversation_id=body.conversation_id,
    )
    await db.commit()

    background_tasks.add_task(
        _dispatch_chat_background,
        message_id=str(exchange.message_id),
        push=push,
        transport=transport,
    )
    return ChatMessageResponse(
        conversation_id=exchange.conversation_id,
        message_id=exchange.message_id,
        status=exchange.status,
        message="Message sent for processing",
    )


@router.get("/conversation/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation_id: UUID,
    tenant: Tenant = Depends(get_current_tenant),
    chat: ChatService = Depends(get_chat_service),
) -> ConversationResponse:
    """All exchanges of a conversation, oldest first."""
    exchanges = await chat.history(str(tenant.id), conversation_id)
    return ConversationResponse(
        conversation_id=conversation_id,
        exchanges=[ChatExchangeOut.model_validate(e) for e in exchanges],
    )


@router.get("/chat/{message_id}", response_model=ChatExchangeOut)
async def get_exchange(
    message_id: UUID,
    tenant: Tenant = Depends(get_current_tenant),
    chat: ChatService = Depends(get_chat_service),
) -> ChatExchangeOut:
    exchange = await chat.get(message_id, str(tenant.id))
    return ChatExchangeOut.model_validate(exchange)


@router.get("/chat-exchanges/stuck", response_model=StuckExchangesResponse)
async def list_stuck_exchanges(
    older_than_minutes: int | None = Query(default=None, ge=1),
    tenant: Tenant = Depends(get_current_tenant),
    chat: ChatService = Depends(get_chat_service),
) -> StuckExchangesResponse:
    """Exchanges still awaiting a response after the cut-off. Never auto-failed."""
    minutes = older_than_minutes or settings.chat_stuck_after_minutes
    exchanges = await chat.find_stuck(minutes, tenant_id=str(tenant.id))
    return StuckExchangesResponse(
        older_than_minutes=minutes,
        count=len(exchanges),
        exchanges=[ChatExchangeOut.model_validate(e) for e in exchanges],
    )
