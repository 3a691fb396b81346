"""Chat exchange lifecycle: sent → awaiting_response → {completed, failed}.

Exactly one terminal resolution is accepted per message_id. Resolution is a
single conditional UPDATE guarded by ``status = 'awaiting_response'``; the
first writer wins, and every later attempt finds zero rows and is classified
as NotFound, Unauthorized or Conflict without touching the row.

Stuck exchanges are never failed automatically. ``find_stuck`` exposes them
for monitoring.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    ChatExchangeNotFoundError,
    ConflictError,
    PipelineError,
    UnauthorizedError,
)
from app.models.chat_exchange import ChatExchange
from app.services.chat.push import PushChannel, conversation_topic, publish_quietly
from app.services.chat.queue import RESPONSE_QUEUE
from app.services.chat.transport import ChatTransport, WebhookTransport
from app.services.tokens import TenantTokenStore
from app.services.webhooks.dispatcher import WebhookDispatcher
from app.services.webhooks.protocol import Endpoint

logger = structlog.get_logger(__name__)

SENT = "sent"
AWAITING_RESPONSE = "awaiting_response"
COMPLETED = "completed"
FAILED = "failed"


def _parse_uuid(value: Any) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


class ChatService:
    """Creates, dispatches, resolves and reads chat exchanges."""

    def __init__(
        self,
        db: AsyncSession,
        push: PushChannel | None = None,
        transport: ChatTransport | None = None,
        dispatcher: WebhookDispatcher | None = None,
    ) -> None:
        self._db = db
        self._push = push
        self._transport = transport or WebhookTransport()
        self._dispatcher = dispatcher or WebhookDispatcher(db)
        self._tokens = TenantTokenStore(db)

    # -- Requester -----------------------------------------------------------

    async def send_message(
        self,
        tenant_id: str,
        message: str,
        conversation_id: uuid.UUID | None = None,
        user_email: str | None = None,
    ) -> ChatExchange:
        """Persist a new exchange in ``sent``. Dispatch happens after commit."""
        exchange = ChatExchange(
            message_id=uuid.uuid4(),
            conversation_id=conversation_id or uuid.uuid4(),
            tenant_id=tenant_id,
            user_email=user_email,
            user_message=message,
            status=SENT,
            transport=self._transport.name,
            created_at=datetime.now(timezone.utc),
        )
        self._db.add(exchange)
        await self._db.flush()
        logger.info(
            "chat_message_created",
            message_id=str(exchange.message_id),
            conversation_id=str(exchange.conversation_id),
            tenant_id=tenant_id,
        )
        return exchange

    def build_payload(self, exchange: ChatExchange, token: str) -> dict[str, Any]:
        base = settings.app_url.rstrip("/")
        return {
            "source": settings.webhook_source,
            "action": Endpoint.PROCESS_CHAT_MESSAGE.value,
            "tenant_id": exchange.tenant_id,
            "user_email": exchange.user_email,
            "conversation_id": str(exchange.conversation_id),
            "message_id": str(exchange.message_id),
            "customer_message": exchange.user_message,
            "callback_url": f"{base}/api/rag/chat-callback/{exchange.message_id}",
            "callback_token": token,
            "vector_search_url": f"{base}/api/rag/vector-search",
            "queue_name": RESPONSE_QUEUE,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def dispatch(self, message_id: Any) -> ChatExchange | None:
        """Move a ``sent`` exchange to ``awaiting_response`` and hand it to the transport.

        The transition is committed before the outbound call so a fast
        callback always finds ``awaiting_response``.
        """
        exchange = await self._get_by_id(message_id)
        if exchange is None or exchange.status != SENT:
            logger.info(
                "chat_dispatch_skipped",
                message_id=str(message_id),
                status=exchange.status if exchange else None,
            )
            return exchange

        token = await self._tokens.get_or_create_token(exchange.tenant_id)
        exchange.status = AWAITING_RESPONSE
        exchange.dispatched_at = datetime.now(timezone.utc)
        await self._db.commit()

        payload = self.build_payload(exchange, token)
        try:
            await self._transport.send(
                self._dispatcher, payload, exchange.tenant_id, str(exchange.message_id)
            )
        except PipelineError as e:
            await self.mark_failed(exchange.message_id, e.message)
            return exchange
        await self._db.commit()

        logger.info(
            "chat_message_dispatched",
            message_id=str(exchange.message_id),
            tenant_id=exchange.tenant_id,
            transport=self._transport.name,
        )
        return exchange

    # -- Responder -----------------------------------------------------------

    async def apply_callback(
        self,
        message_id: Any,
        tenant_id: str,
        token: str | None,
        conversation_id: Any,
        ai_response: str,
        sources: list[Any],
        processing_time_ms: int | None = None,
    ) -> ChatExchange:
        """Authenticated HTTP callback path."""
        await self._tokens.authenticate(tenant_id, token, Endpoint.CHAT_CALLBACK.value)
        return await self.resolve(
            message_id=message_id,
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            ai_response=ai_response,
            sources=sources,
            processing_time_ms=processing_time_ms,
        )

    async def resolve(
        self,
        message_id: Any,
        tenant_id: str,
        conversation_id: Any,
        ai_response: str,
        sources: list[Any],
        processing_time_ms: int | None = None,
    ) -> ChatExchange:
        """Complete an ``awaiting_response`` exchange. First writer wins."""
        msg_uuid = _parse_uuid(message_id)
        conv_uuid = _parse_uuid(conversation_id)
        if msg_uuid is None:
            raise ChatExchangeNotFoundError()

        now = datetime.now(timezone.utc)
        result = await self._db.execute(
            update(ChatExchange)
            .where(
                ChatExchange.message_id == msg_uuid,
                ChatExchange.tenant_id == tenant_id,
                ChatExchange.conversation_id == conv_uuid,
                ChatExchange.status == AWAITING_RESPONSE,
            )
            .values(
                status=COMPLETED,
                ai_response=ai_response,
                sources=sources,
                processing_time_ms=processing_time_ms,
                resolved_at=now,
            )
            .returning(ChatExchange)
        )
        exchange = result.scalar_one_or_none()
        if exchange is None:
            await self._raise_rejection(msg_uuid, tenant_id, conv_uuid)
        await self._db.commit()

        logger.info(
            "chat_exchange_completed",
            message_id=str(msg_uuid),
            conversation_id=str(conv_uuid),
            tenant_id=tenant_id,
            processing_time_ms=processing_time_ms,
        )
        await publish_quietly(
            self._push,
            tenant_id,
            conversation_topic(conv_uuid),
            {
                "type": "chat-response",
                "message_id": str(msg_uuid),
                "conversation_id": str(conv_uuid),
                "ai_response": ai_response,
                "sources": sources,
                "processing_time_ms": processing_time_ms,
            },
        )
        return exchange

    async def mark_failed(self, message_id: Any, reason: str) -> bool:
        """Fail a non-terminal exchange. Returns False if it was already terminal."""
        msg_uuid = _parse_uuid(message_id)
        if msg_uuid is None:
            return False
        result = await self._db.execute(
            update(ChatExchange)
            .where(
                ChatExchange.message_id == msg_uuid,
                ChatExchange.status.in_((SENT, AWAITING_RESPONSE)),
            )
            .values(status=FAILED, error_message=reason[:2000], resolved_at=datetime.now(timezone.utc))
            .returning(ChatExchange.tenant_id, ChatExchange.conversation_id)
        )
        row = result.first()
        await self._db.commit()
        if row is None:
            logger.info("chat_mark_failed_noop", message_id=str(msg_uuid))
            return False

        tenant_id, conv_uuid = row
        logger.warning("chat_exchange_failed", message_id=str(msg_uuid), tenant_id=tenant_id, reason=reason)
        await publish_quietly(
            self._push,
            tenant_id,
            conversation_topic(conv_uuid),
            {
                "type": "chat-failed",
                "message_id": str(msg_uuid),
                "conversation_id": str(conv_uuid),
                "error": reason,
            },
        )
        return True

    # -- Reads -----------------------------------------------------------------

    async def get(self, message_id: Any, tenant_id: str) -> ChatExchange:
        exchange = await self._get_by_id(message_id)
        if exchange is None or exchange.tenant_id != tenant_id:
            raise ChatExchangeNotFoundError()
        return exchange

    async def history(self, tenant_id: str, conversation_id: Any) -> Sequence[ChatExchange]:
        conv_uuid = _parse_uuid(conversation_id)
        if conv_uuid is None:
            return []
        result = await self._db.execute(
            select(ChatExchange)
            .where(
                ChatExchange.tenant_id == tenant_id,
                ChatExchange.conversation_id == conv_uuid,
            )
            .order_by(ChatExchange.created_at.asc())
        )
        return result.scalars().all()

    async def find_stuck(
        self,
        older_than_minutes: int | None = None,
        tenant_id: str | None = None,
    ) -> Sequence[ChatExchange]:
        """``awaiting_response`` exchanges older than the cut-off, oldest first."""
        minutes = older_than_minutes if older_than_minutes is not None else settings.chat_stuck_after_minutes
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)
        stmt = select(ChatExchange).where(
            ChatExchange.status == AWAITING_RESPONSE,
            ChatExchange.created_at < cutoff,
        )
        if tenant_id is not None:
            stmt = stmt.where(ChatExchange.tenant_id == tenant_id)
        result = await self._db.execute(stmt.order_by(ChatExchange.created_at.asc()))
        return result.scalars().all()

    # -- Internal ------------------------------------------------------------

    async def _get_by_id(self, message_id: Any) -> ChatExchange | None:
        msg_uuid = _parse_uuid(message_id)
        if msg_uuid is None:
            return None
        result = await self._db.execute(
            select(ChatExchange)
            .where(ChatExchange.message_id == msg_uuid)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _raise_rejection(
        self,
        msg_uuid: uuid.UUID,
        tenant_id: str,
        conv_uuid: uuid.UUID | None,
    ) -> None:
        existing = await self._get_by_id(msg_uuid)
        if existing is None:
            raise ChatExchangeNotFoundError()
        if existing.tenant_id != tenant_id or existing.conversation_id != conv_uuid:
            logger.warning(
                "callback_tenant_mismatch",
                endpoint=Endpoint.CHAT_CALLBACK.value,
                message_id=str(msg_uuid),
                claimed_tenant_id=tenant_id,
            )
            raise UnauthorizedError()
        logger.warning(
            "chat_callback_conflict",
            message_id=str(msg_uuid),
            tenant_id=tenant_id,
            status=existing.status,
        )
        raise ConflictError(f"Message is '{existing.status}' and no longer awaits a response")
