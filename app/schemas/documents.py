"""Document upload/status request and response schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict


class UploadResponse(BaseModel):
    """POST /api/rag/upload-document response body."""

    success: bool = True
    document_id: uuid.UUID
    status: str
    message: str


class DocumentListItem(BaseModel):
    """Single document in the list response."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    original_filename: str
    file_type: str
    file_size: int
    status: str
    vector_count: int = 0
    created_at: datetime
    updated_at: datetime | None = None


class DocumentListResponse(BaseModel):
    """GET /api/rag/documents response body."""

    success: bool = True
    documents: list[DocumentListItem]


class RetryQueueState(BaseModel):
    """Latest retry-queue entry for a document's dispatch."""

    model_config = ConfigDict(from_attributes=True)

    status: str
    attempt_count: int
    max_attempts: int
    next_retry_at: datetime | None = None
    last_error: str | None = None


class DocumentStatusResponse(BaseModel):
    """GET /api/rag/document-status/{document_id} response body."""

    success: bool = True
    document_id: uuid.UUID
    status: str
    has_markdown: bool
    vector_count: int
    error_message: str | None = None
    markdown_received_at: datetime | None = None
    vectors_received_at: datetime | None = None
    webhook: RetryQueueState | None = None


class DocumentRetryResponse(BaseModel):
    """POST /api/rag/document-retry/{document_id} response body."""

    success: bool = True
    document_id: uuid.UUID
    status: str
    message: str


class VectorStatsResponse(BaseModel):
    """GET /api/rag/vectors/stats response body."""

    success: bool = True
    total_vectors: int
    documents_with_vectors: int
    dimension: int


class VectorDeleteResponse(BaseModel):
    """DELETE /api/rag/documents/{document_id}/vectors response body."""

    success: bool = True
    document_id: uuid.UUID
    deleted: int
