"""Vector search request/response schemas."""

import uuid
from typing import Any

from pydantic import BaseModel, Field


class VectorSearchRequest(BaseModel):
    """POST /api/rag/vector-search request body."""

    query_embedding: list[float]
    tenant_id: str
    message_id: uuid.UUID | None = None
    limit: int = Field(default=5, ge=1, le=50)
    threshold: float = Field(default=0.7, ge=-1.0, le=1.0)


class SearchResult(BaseModel):
    document_id: str
    chunk_text: str
    chunk_index: int
    similarity: float
    metadata: dict[str, Any] = {}


class VectorSearchResponse(BaseModel):
    success: bool = True
    results: list[SearchResult]
    execution_time_ms: int
