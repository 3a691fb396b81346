"""RabbitMQ transport for chat requests and responses (aio-pika).

Topology, declared idempotently on connect:

    exchange  chat.exchange (topic, durable)
    queue     chat.requests   bound with chat.process
    queue     chat.responses  bound with chat.response

The processing service consumes ``chat.requests`` and answers on
``chat.responses``. Responses are resolved through the same exactly-once
path as the HTTP chat callback. Poison messages are acknowledged and
dropped; they would otherwise be redelivered forever.
"""

from __future__ import annotations

import json
from contextlib import AbstractAsyncContextManager
from typing import Any, Callable

import aio_pika
import structlog
from aio_pika.abc import (
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustChannel,
    AbstractRobustConnection,
)
from aio_pika.exceptions import AMQPError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import PipelineError, QueueConnectionError
from app.db.postgres import session_scope

logger = structlog.get_logger(__name__)

EXCHANGE_NAME = "chat.exchange"
REQUEST_QUEUE = "chat.requests"
RESPONSE_QUEUE = "chat.responses"
REQUEST_ROUTING_KEY = "chat.process"
RESPONSE_ROUTING_KEY = "chat.response"

_REQUIRED_RESPONSE_FIELDS = ("message_id", "conversation_id", "tenant_id", "response")


class ChatQueue:
    """Connection, channel and topology for the chat queues."""

    def __init__(self, url: str | None = None, prefetch_count: int = 1) -> None:
        self._url = url or settings.rabbitmq_url
        self._prefetch_count = prefetch_count
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractRobustChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._responses: AbstractQueue | None = None
        self._consumer_tag: str | None = None

    async def connect(self) -> None:
        try:
            self._connection = await aio_pika.connect_robust(self._url)
            self._channel = await self._connection.channel()
            await self._channel.set_qos(prefetch_count=self._prefetch_count)
            self._exchange = await self._channel.declare_exchange(
                EXCHANGE_NAME, aio_pika.ExchangeType.TOPIC, durable=True
            )
            requests = await self._channel.declare_queue(REQUEST_QUEUE, durable=True)
            await requests.bind(self._exchange, routing_key=REQUEST_ROUTING_KEY)
            self._responses = await self._channel.declare_queue(RESPONSE_QUEUE, durable=True)
            await self._responses.bind(self._exchange, routing_key=RESPONSE_ROUTING_KEY)
        except (AMQPError, OSError) as e:
            logger.error("rabbitmq_connect_failed", error=str(e))
            raise QueueConnectionError(f"RabbitMQ connection failed: {e}") from e
        logger.info("rabbitmq_connected", exchange=EXCHANGE_NAME)

    async def publish_chat_request(self, payload: dict[str, Any]) -> None:
        """Publish a persistent chat request on ``chat.process``."""
        if self._exchange is None:
            raise QueueConnectionError("RabbitMQ channel is not open")
        message = aio_pika.Message(
            body=json.dumps(payload, default=str).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=str(payload.get("message_id") or ""),
        )
        try:
            await self._exchange.publish(message, routing_key=REQUEST_ROUTING_KEY)
        except (AMQPError, OSError) as e:
            logger.error(
                "rabbitmq_publish_failed",
                message_id=payload.get("message_id"),
                error=str(e),
            )
            raise QueueConnectionError(f"RabbitMQ publish failed: {e}") from e
        logger.info("chat_request_published", message_id=payload.get("message_id"))

    async def consume_responses(self, consumer: "ChatResponseConsumer") -> None:
        if self._responses is None:
            raise QueueConnectionError("RabbitMQ channel is not open")
        self._consumer_tag = await self._responses.consume(consumer.handle)
        logger.info("chat_response_consumer_started", queue=RESPONSE_QUEUE)

    async def close(self) -> None:
        if self._responses is not None and self._consumer_tag is not None:
            try:
                await self._responses.cancel(self._consumer_tag)
            except (AMQPError, OSError) as e:
                logger.warning("rabbitmq_cancel_failed", error=str(e))
        if self._connection is not None:
            await self._connection.close()
        logger.info("rabbitmq_shutdown")


class ChatResponseConsumer:
    """Resolves chat exchanges from ``chat.responses`` messages."""

    def __init__(
        self,
        push: Any = None,
        session_factory: Callable[[], AbstractAsyncContextManager[AsyncSession]] = session_scope,
    ) -> None:
        self._push = push
        self._session_factory = session_factory

    async def handle(self, message: AbstractIncomingMessage) -> None:
        async with message.process(requeue=False):
            data = self._decode(message.body)
            if data is None:
                return
            await self.resolve(data)

    async def resolve(self, data: dict[str, Any]) -> bool:
        """Apply one decoded response. Returns True if it resolved an exchange."""
        from app.services.chat.service import ChatService

        try:
            async with self._session_factory() as db:
                service = ChatService(db=db, push=self._push)
                await service.resolve(
                    message_id=data["message_id"],
                    tenant_id=str(data["tenant_id"]),
                    conversation_id=data["conversation_id"],
                    ai_response=data["response"],
                    sources=data.get("sources") or [],
                    processing_time_ms=data.get("processing_time_ms"),
                )
        except PipelineError as e:
            if e.status_code >= 500:
                raise
            # Conflict / NotFound / Unauthorized: acknowledge, never redeliver.
            logger.warning(
                "chat_response_rejected",
                message_id=data.get("message_id"),
                code=e.code,
                error=e.message,
            )
            return False
        return True

    @staticmethod
    def _decode(body: bytes) -> dict[str, Any] | None:
        try:
            data = json.loads(body)
        except (TypeError, ValueError):
            logger.warning("chat_response_poison_message", reason="invalid_json")
            return None
        if not isinstance(data, dict):
            logger.warning("chat_response_poison_message", reason="not_an_object")
            return None
        missing = [name for name in _REQUIRED_RESPONSE_FIELDS if not data.get(name)]
        if missing:
            logger.warning(
                "chat_response_poison_message",
                reason="missing_fields",
                missing=missing,
                message_id=data.get("message_id"),
            )
            return None
        return data
