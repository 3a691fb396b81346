"""Shared pytest fixtures for the processing pipeline test suite.

Provides:
  - mock_db: MagicMock with the AsyncSession surface the services use
  - vector_store: VectorStore over an embedded in-memory Qdrant (dimension 4)
  - push: in-process push channel
  - sample_tenant_id / sample_tenant: fixed tenant identity
  - make_document / make_exchange: transient ORM rows for service tests

No external service is contacted: Postgres is mocked, Qdrant runs in
embedded ``:memory:`` mode, outbound HTTP goes through httpx.MockTransport.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest
from qdrant_client.async_qdrant_client import AsyncQdrantClient

from app.db.qdrant import VectorStore
from app.services.chat.push import InMemoryPushChannel

TEST_DIMENSION = 4


def _make_mock_db() -> MagicMock:
    """Create a mock async DB session."""
    db = MagicMock()
    db.add = MagicMock()
    db.flush = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.close = AsyncMock()
    db.execute = AsyncMock()
    return db


@pytest.fixture
def mock_db() -> MagicMock:
    """Mock async database session.

    The ORM models use PostgreSQL-specific column types (JSONB, UUID) and
    the services rely on FOR UPDATE / ON CONFLICT, so an in-memory SQLite
    session is not a substitute.
    """
    return _make_mock_db()


@pytest.fixture
def vector_store() -> VectorStore:
    """VectorStore backed by embedded Qdrant, small dimension for readable tests."""
    return VectorStore(AsyncQdrantClient(location=":memory:"), dimension=TEST_DIMENSION)


@pytest.fixture
def push() -> InMemoryPushChannel:
    return InMemoryPushChannel()


@pytest.fixture
def sample_tenant_id() -> str:
    """Fixed tenant id for testing."""
    return "00000000-0000-0000-0000-000000000001"


@pytest.fixture
def sample_tenant(sample_tenant_id: str) -> Any:
    """Sample Tenant ORM instance for testing."""
    from app.models.tenant import Tenant

    return Tenant(
        id=uuid.UUID(sample_tenant_id),
        name="Test Corp",
        api_key_hash="sha256_test_hash_value_for_testing",
        is_active=True,
    )


@pytest.fixture
def make_document(sample_tenant_id: str) -> Callable[..., Any]:
    """Factory for transient Document rows."""
    from app.models.document import Document

    def _make(**overrides: Any) -> Document:
        now = datetime(2024, 1, 15, 10, 30, 0, tzinfo=timezone.utc)
        fields: dict[str, Any] = {
            "id": uuid.UUID("00000000-0000-0000-0000-0000000000d1"),
            "tenant_id": sample_tenant_id,
            "callback_id": "cb-0001",
            "callback_token": "tok",
            "status": "processing",
            "content": "[PDF document: handbook.pdf]",
            "file_type": "pdf",
            "file_size": 1024,
            "original_filename": "handbook.pdf",
            "metadata_": {},
            "vector_count": 0,
            "created_at": now,
            "updated_at": now,
        }
        fields.update(overrides)
        return Document(**fields)

    return _make


@pytest.fixture
def make_exchange(sample_tenant_id: str) -> Callable[..., Any]:
    """Factory for transient ChatExchange rows."""
    from app.models.chat_exchange import ChatExchange

    def _make(**overrides: Any) -> ChatExchange:
        fields: dict[str, Any] = {
            "message_id": uuid.UUID("00000000-0000-0000-0000-0000000000a1"),
            "conversation_id": uuid.UUID("00000000-0000-0000-0000-0000000000c1"),
            "tenant_id": sample_tenant_id,
            "user_message": "How do I reset my password?",
            "status": "awaiting_response",
            "transport": "webhook_only",
            "created_at": datetime(2024, 1, 15, 10, 30, 0, tzinfo=timezone.utc),
        }
        fields.update(overrides)
        return ChatExchange(**fields)

    return _make

