"""Chat request/response schemas."""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ChatMessageRequest(BaseModel):
    """POST /api/rag/chat request body."""

    message: str = Field(min_length=1, max_length=1000)
    conversation_id: uuid.UUID | None = None


class ChatMessageResponse(BaseModel):
    """POST /api/rag/chat response body. Returned before any dispatch happens."""

    success: bool = True
    conversation_id: uuid.UUID
    message_id: uuid.UUID
    status: str
    message: str


class ChatExchangeOut(BaseModel):
    """One user message and its (eventual) AI response."""

    model_config = ConfigDict(from_attributes=True)

    message_id: uuid.UUID
    conversation_id: uuid.UUID
    user_message: str
    ai_response: str | None = None
    sources: list[Any] | None = None
    status: str
    transport: str
    processing_time_ms: int | None = None
    error_message: str | None = None
    created_at: datetime
    resolved_at: datetime | None = None


class ConversationResponse(BaseModel):
    """GET /api/rag/conversation/{conversation_id} response body."""

    success: bool = True
    conversation_id: uuid.UUID
    exchanges: list[ChatExchangeOut]


class StuckExchangesResponse(BaseModel):
    """GET /api/rag/chat-exchanges/stuck response body."""

    success: bool = True
    older_than_minutes: int
    count: int
    exchanges: list[ChatExchangeOut]
