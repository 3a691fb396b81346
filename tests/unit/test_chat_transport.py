"""Unit tests for chat transports and the response-queue consumer.

Tests:
  - build_transport picks the configured mode and refuses queue modes without a queue
  - hybrid: a queue failure is logged, the webhook leg still runs
  - queue_only: a publish failure propagates so the exchange is failed
  - consumer drops poison messages and acknowledges rejected resolutions
  - consumer re-raises infrastructure errors
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import AsyncIterator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.core.exceptions import ConflictError, DatabaseConnectionError, QueueConnectionError
from app.services.chat.queue import ChatQueue, ChatResponseConsumer
from app.services.chat.transport import (
    HybridTransport,
    QueueTransport,
    WebhookTransport,
    build_transport,
)
from app.services.webhooks.protocol import Endpoint

VALID_RESPONSE = {
    "message_id": "00000000-0000-0000-0000-0000000000a1",
    "conversation_id": "00000000-0000-0000-0000-0000000000c1",
    "tenant_id": "tenant-a",
    "response": "Use the reset link on the login page.",
    "sources": [{"document_id": "d1"}],
    "processing_time_ms": 840,
}


def _mock_queue(publish_error: Exception | None = None) -> MagicMock:
    queue = MagicMock(spec=ChatQueue)
    queue.publish_chat_request = AsyncMock(side_effect=publish_error)
    return queue


def _mock_dispatcher() -> MagicMock:
    dispatcher = MagicMock()
    dispatcher.send = AsyncMock()
    return dispatcher


@asynccontextmanager
async def _session() -> AsyncIterator[MagicMock]:
    yield MagicMock()


class TestBuildTransport:
    def test_webhook_only(self) -> None:
        assert isinstance(build_transport("webhook_only"), WebhookTransport)

    def test_queue_modes(self) -> None:
        queue = _mock_queue()
        assert isinstance(build_transport("queue_only", queue), QueueTransport)
        assert isinstance(build_transport("hybrid", queue), HybridTransport)

    def test_queue_mode_without_queue(self) -> None:
        with pytest.raises(ValueError):
            build_transport("hybrid")

    def test_unknown_mode(self) -> None:
        with pytest.raises(ValueError):
            build_transport("carrier_pigeon", _mock_queue())


class TestTransports:
    @pytest.mark.asyncio
    async def test_webhook_sends_chat_endpoint(self) -> None:
        dispatcher = _mock_dispatcher()
        await WebhookTransport().send(dispatcher, {"message_id": "m1"}, "tenant-a", "m1")

        kwargs = dispatcher.send.await_args.kwargs
        assert kwargs["endpoint"] is Endpoint.PROCESS_CHAT_MESSAGE
        assert kwargs["resource_id"] == "m1"

    @pytest.mark.asyncio
    async def test_hybrid_survives_queue_failure(self) -> None:
        queue = _mock_queue(QueueConnectionError("broker down"))
        dispatcher = _mock_dispatcher()

        await HybridTransport(queue).send(dispatcher, {"message_id": "m1"}, "tenant-a", "m1")

        queue.publish_chat_request.assert_awaited_once()
        dispatcher.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_queue_only_propagates_failure(self) -> None:
        queue = _mock_queue(QueueConnectionError("broker down"))
        dispatcher = _mock_dispatcher()

        with pytest.raises(QueueConnectionError):
            await QueueTransport(queue).send(dispatcher, {}, "tenant-a", "m1")
        dispatcher.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_publish_without_connection(self) -> None:
        with pytest.raises(QueueConnectionError):
            await ChatQueue(url="amqp://nowhere/").publish_chat_request({"message_id": "m1"})


class TestResponseConsumerDecode:
    def test_invalid_json(self) -> None:
        assert ChatResponseConsumer._decode(b"{not json") is None

    def test_not_an_object(self) -> None:
        assert ChatResponseConsumer._decode(b"[1, 2]") is None

    def test_missing_fields(self) -> None:
        body = json.dumps({"message_id": "m1", "tenant_id": "t"}).encode()
        assert ChatResponseConsumer._decode(body) is None

    def test_valid(self) -> None:
        data = ChatResponseConsumer._decode(json.dumps(VALID_RESPONSE).encode())
        assert data == VALID_RESPONSE


class TestResponseConsumerResolve:
    @pytest.mark.asyncio
    async def test_resolves_through_chat_service(self) -> None:
        consumer = ChatResponseConsumer(session_factory=_session)
        with patch("app.services.chat.service.ChatService.resolve", AsyncMock()) as resolve:
            assert await consumer.resolve(VALID_RESPONSE) is True

        kwargs = resolve.await_args.kwargs
        assert kwargs["message_id"] == VALID_RESPONSE["message_id"]
        assert kwargs["ai_response"] == VALID_RESPONSE["response"]
        assert kwargs["processing_time_ms"] == 840

    @pytest.mark.asyncio
    async def test_conflict_acknowledged(self) -> None:
        """A duplicate response is dropped, never redelivered."""
        consumer = ChatResponseConsumer(session_factory=_session)
        with patch(
            "app.services.chat.service.ChatService.resolve",
            AsyncMock(side_effect=ConflictError()),
        ):
            assert await consumer.resolve(VALID_RESPONSE) is False

    @pytest.mark.asyncio
    async def test_infrastructure_error_reraised(self) -> None:
        consumer = ChatResponseConsumer(session_factory=_session)
        with patch(
            "app.services.chat.service.ChatService.resolve",
            AsyncMock(side_effect=DatabaseConnectionError()),
        ):
            with pytest.raises(DatabaseConnectionError):
                await consumer.resolve(VALID_RESPONSE)

    @pytest.mark.asyncio
    async def test_poison_message_acknowledged_without_resolve(self) -> None:
        consumer = ChatResponseConsumer(session_factory=_session)
        consumer.resolve = AsyncMock()
        message = MagicMock()
        message.body = b"garbage"

        await consumer.handle(message)

        message.process.assert_called_once_with(requeue=False)
        consumer.resolve.assert_not_called()
