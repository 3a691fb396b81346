"""Inbound callback request/response schemas.

Embedding length is not constrained here: a vector callback
accepts partial batches, so each entry's dimension is checked individually
by the registry and bad entries are reported rather than failing the body.
"""

import uuid
from typing import Any

from pydantic import BaseModel, Field


class MarkdownCallbackRequest(BaseModel):
    """POST /api/rag/document-callback/{document_id} request body."""

    tenant_id: str
    markdown: str | None = None
    metadata: dict[str, Any] | None = None
    error: str | None = None


class CallbackAck(BaseModel):
    """Generic callback acknowledgement."""

    success: bool
    message: str


class VectorEntry(BaseModel):
    """One chunk in a vector callback."""

    chunk_text: str
    embedding: list[float]
    chunk_index: int = Field(ge=0)
    metadata: dict[str, Any] | None = None


class VectorCallbackRequest(BaseModel):
    """POST /api/rag/callback/{callback_id} request body."""

    document_id: uuid.UUID
    tenant_id: str
    vectors: list[VectorEntry]


class RejectedVector(BaseModel):
    index: int
    chunk_index: int
    reason: str


class VectorCallbackResponse(BaseModel):
    """Vector callback result. Partial success is reported, not hidden."""

    success: bool
    vectors_stored: int
    vectors_rejected: list[RejectedVector] = []
    duplicates_skipped: int = 0
    status: str | None = None
    message: str | None = None


class ChatCallbackRequest(BaseModel):
    """POST /api/rag/chat-callback/{message_id} request body."""

    conversation_id: uuid.UUID
    tenant_id: str
    ai_response: str
    sources: list[Any] = []
    processing_time_ms: int | None = None


class ChatCallbackResponse(BaseModel):
    success: bool
    message_id: uuid.UUID
    status: str
