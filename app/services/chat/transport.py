"""Chat request transports, chosen once at startup from ``chat_transport``.

- webhook_only: Webhook Dispatcher (failures go to the retry queue)
- queue_only:   RabbitMQ publish; a publish failure fails the exchange
- hybrid:       both; only the webhook leg decides failure
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import structlog

from app.core.config import settings
from app.core.exceptions import QueueConnectionError
from app.services.chat.queue import ChatQueue
from app.services.webhooks.dispatcher import WebhookDispatcher
from app.services.webhooks.protocol import Endpoint

logger = structlog.get_logger(__name__)


class ChatTransport(ABC):
    name: str

    @abstractmethod
    async def send(
        self,
        dispatcher: WebhookDispatcher,
        payload: dict[str, Any],
        tenant_id: str,
        message_id: str,
    ) -> None:
        """Hand the request off. Raises only when the exchange must be failed."""


class WebhookTransport(ChatTransport):
    name = "webhook_only"

    async def send(self, dispatcher, payload, tenant_id, message_id) -> None:
        await dispatcher.send(
            settings.processing_webhook_url,
            payload,
            tenant_id,
            endpoint=Endpoint.PROCESS_CHAT_MESSAGE,
            resource_id=message_id,
        )


class QueueTransport(ChatTransport):
    name = "queue_only"

    def __init__(self, queue: ChatQueue) -> None:
        self._queue = queue

    async def send(self, dispatcher, payload, tenant_id, message_id) -> None:
        await self._queue.publish_chat_request(payload)


class HybridTransport(ChatTransport):
    name = "hybrid"

    def __init__(self, queue: ChatQueue) -> None:
        self._queue = queue
        self._webhook = WebhookTransport()

    async def send(self, dispatcher, payload, tenant_id, message_id) -> None:
        try:
            await self._queue.publish_chat_request(payload)
        except QueueConnectionError as e:
            logger.warning("chat_queue_leg_failed", message_id=message_id, error=e.message)
        await self._webhook.send(dispatcher, payload, tenant_id, message_id)


def build_transport(mode: str, queue: ChatQueue | None = None) -> ChatTransport:
    if mode == "webhook_only":
        return WebhookTransport()
    if queue is None:
        raise ValueError(f"chat transport '{mode}' needs a RabbitMQ connection")
    if mode == "queue_only":
        return QueueTransport(queue)
    if mode == "hybrid":
        return HybridTransport(queue)
    raise ValueError(f"Unknown chat transport '{mode}'")
