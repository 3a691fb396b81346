"""Integration tests for the chat exchange lifecycle.

Tests:
  - exactly one resolution per message: the second callback is a Conflict
  - wrong tenant or conversation on a live message → Unauthorized
  - unknown message → NotFound
  - dispatch moves sent → awaiting_response and a transport failure fails the exchange
  - completion and failure are pushed on the conversation topic
"""

from __future__ import annotations

import uuid
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.core.exceptions import (
    ChatExchangeNotFoundError,
    ConflictError,
    QueueConnectionError,
    UnauthorizedError,
)
from app.services.chat.push import InMemoryPushChannel, conversation_topic
from app.services.chat.service import ChatService

MESSAGE_ID = "00000000-0000-0000-0000-0000000000a1"
CONVERSATION_ID = "00000000-0000-0000-0000-0000000000c1"


def _scalar(value: Any) -> MagicMock:
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    return result


def _row(value: Any) -> MagicMock:
    result = MagicMock()
    result.first.return_value = value
    return result


def _service(mock_db: MagicMock, push: InMemoryPushChannel | None = None, transport: Any = None) -> ChatService:
    service = ChatService(mock_db, push=push, transport=transport, dispatcher=MagicMock())
    service._tokens.authenticate = AsyncMock()
    service._tokens.get_or_create_token = AsyncMock(return_value="tenant-token")
    return service


class TestResolveExactlyOnce:
    @pytest.mark.asyncio
    async def test_first_callback_wins_second_conflicts(
        self,
        mock_db: MagicMock,
        make_exchange: Callable[..., Any],
        push: InMemoryPushChannel,
        sample_tenant_id: str,
    ) -> None:
        completed = make_exchange(status="completed", ai_response="first answer")
        mock_db.execute = AsyncMock(
            side_effect=[
                _scalar(completed),  # first conditional UPDATE hits the row
                _scalar(None),  # second finds nothing awaiting
                _scalar(completed),  # classification read
            ]
        )
        service = _service(mock_db, push)
        events = await push.subscribe(sample_tenant_id, conversation_topic(CONVERSATION_ID))

        exchange = await service.apply_callback(
            MESSAGE_ID, sample_tenant_id, "tok", CONVERSATION_ID, "first answer", []
        )
        assert exchange.status == "completed"

        with pytest.raises(ConflictError) as exc_info:
            await service.apply_callback(
                MESSAGE_ID, sample_tenant_id, "tok", CONVERSATION_ID, "second answer", []
            )
        assert exc_info.value.status_code == 409
        assert completed.ai_response == "first answer"

        event = await events.next_event(timeout=0.1)
        assert event is not None
        assert event["type"] == "chat-response"
        assert event["ai_response"] == "first answer"
        assert await events.next_event(timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_wrong_conversation_unauthorized(
        self,
        mock_db: MagicMock,
        make_exchange: Callable[..., Any],
        sample_tenant_id: str,
    ) -> None:
        live = make_exchange()
        mock_db.execute = AsyncMock(side_effect=[_scalar(None), _scalar(live)])
        service = _service(mock_db)

        with pytest.raises(UnauthorizedError):
            await service.resolve(
                MESSAGE_ID, sample_tenant_id, str(uuid.uuid4()), "answer", []
            )

    @pytest.mark.asyncio
    async def test_wrong_tenant_unauthorized(
        self,
        mock_db: MagicMock,
        make_exchange: Callable[..., Any],
    ) -> None:
        live = make_exchange()
        mock_db.execute = AsyncMock(side_effect=[_scalar(None), _scalar(live)])
        service = _service(mock_db)

        with pytest.raises(UnauthorizedError):
            await service.resolve(MESSAGE_ID, "tenant-b", CONVERSATION_ID, "answer", [])

    @pytest.mark.asyncio
    async def test_unknown_message(self, mock_db: MagicMock, sample_tenant_id: str) -> None:
        mock_db.execute = AsyncMock(side_effect=[_scalar(None), _scalar(None)])
        service = _service(mock_db)

        with pytest.raises(ChatExchangeNotFoundError):
            await service.resolve(MESSAGE_ID, sample_tenant_id, CONVERSATION_ID, "answer", [])

    @pytest.mark.asyncio
    async def test_malformed_message_id(self, mock_db: MagicMock, sample_tenant_id: str) -> None:
        service = _service(mock_db)
        with pytest.raises(ChatExchangeNotFoundError):
            await service.resolve("not-a-uuid", sample_tenant_id, CONVERSATION_ID, "answer", [])
        mock_db.execute.assert_not_awaited()


class TestDispatch:
    @pytest.mark.asyncio
    async def test_dispatch_awaits_response(
        self,
        mock_db: MagicMock,
        make_exchange: Callable[..., Any],
    ) -> None:
        exchange = make_exchange(status="sent")
        mock_db.execute = AsyncMock(return_value=_scalar(exchange))
        transport = MagicMock()
        transport.name = "webhook_only"
        transport.send = AsyncMock()
        service = _service(mock_db, transport=transport)

        await service.dispatch(MESSAGE_ID)

        assert exchange.status == "awaiting_response"
        assert exchange.dispatched_at is not None
        payload = transport.send.await_args.args[1]
        assert payload["action"] == "process-chat-message"
        assert payload["message_id"] == MESSAGE_ID
        assert payload["customer_message"] == "How do I reset my password?"
        assert payload["callback_url"].endswith(f"/api/rag/chat-callback/{MESSAGE_ID}")
        assert payload["vector_search_url"].endswith("/api/rag/vector-search")
        assert payload["callback_token"] == "tenant-token"

    @pytest.mark.asyncio
    async def test_transport_failure_fails_exchange(
        self,
        mock_db: MagicMock,
        make_exchange: Callable[..., Any],
    ) -> None:
        exchange = make_exchange(status="sent")
        mock_db.execute = AsyncMock(return_value=_scalar(exchange))
        transport = MagicMock()
        transport.name = "queue_only"
        transport.send = AsyncMock(side_effect=QueueConnectionError("broker down"))
        service = _service(mock_db, transport=transport)
        service.mark_failed = AsyncMock(return_value=True)

        await service.dispatch(MESSAGE_ID)

        service.mark_failed.assert_awaited_once_with(exchange.message_id, "broker down")

    @pytest.mark.asyncio
    async def test_already_dispatched_is_skipped(
        self,
        mock_db: MagicMock,
        make_exchange: Callable[..., Any],
    ) -> None:
        exchange = make_exchange(status="awaiting_response")
        mock_db.execute = AsyncMock(return_value=_scalar(exchange))
        transport = MagicMock()
        transport.send = AsyncMock()
        service = _service(mock_db, transport=transport)

        await service.dispatch(MESSAGE_ID)

        transport.send.assert_not_called()


class TestMarkFailed:
    @pytest.mark.asyncio
    async def test_failure_pushed(
        self,
        mock_db: MagicMock,
        push: InMemoryPushChannel,
        sample_tenant_id: str,
    ) -> None:
        mock_db.execute = AsyncMock(
            return_value=_row((sample_tenant_id, uuid.UUID(CONVERSATION_ID)))
        )
        service = _service(mock_db, push)
        events = await push.subscribe(sample_tenant_id, conversation_topic(CONVERSATION_ID))

        assert await service.mark_failed(MESSAGE_ID, "Delivery failed after 3 retries") is True

        event = await events.next_event(timeout=0.1)
        assert event == {
            "type": "chat-failed",
            "message_id": MESSAGE_ID,
            "conversation_id": CONVERSATION_ID,
            "error": "Delivery failed after 3 retries",
        }

    @pytest.mark.asyncio
    async def test_terminal_exchange_untouched(self, mock_db: MagicMock) -> None:
        mock_db.execute = AsyncMock(return_value=_row(None))
        assert await _service(mock_db).mark_failed(MESSAGE_ID, "late") is False
