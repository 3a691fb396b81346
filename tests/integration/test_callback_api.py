"""HTTP-level tests for the callback, vector-search, source and upload endpoints.

Tests:
  - boundary errors come back with their status and the error envelope
  - unexpected internal failures are acknowledged with 200 + success=false
  - malformed bodies → 400 BAD_REQUEST envelope
  - partial vector batches reported field by field
  - vector search errors are never acknowledged
  - every call is captured to the traffic log with its final status
  - document source download and tenant upload
"""

from __future__ import annotations

import uuid
from typing import Any, Iterator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from app.api.deps import (
    get_chat_service,
    get_current_tenant,
    get_db,
    get_document_registry,
    get_push_channel,
    get_token_store,
    get_vector_search_service,
    get_vector_store,
)
from app.core.exceptions import (
    ConflictError,
    DimensionMismatchError,
    DocumentNotFoundError,
    UnauthorizedError,
)
from app.db.qdrant import ScoredChunk
from app.main import app
from app.services.documents.registry import VectorApplyResult
from app.services.vectors import SearchOutcome

DOC_ID = "00000000-0000-0000-0000-0000000000d1"
MESSAGE_ID = "00000000-0000-0000-0000-0000000000a1"
CONVERSATION_ID = "00000000-0000-0000-0000-0000000000c1"


@pytest.fixture
def registry() -> MagicMock:
    return MagicMock()


@pytest.fixture
def chat() -> MagicMock:
    return MagicMock()


@pytest.fixture
def search_service() -> MagicMock:
    return MagicMock()


@pytest.fixture
def traffic() -> Iterator[AsyncMock]:
    with patch("app.api.v1.ack.record_webhook_traffic", AsyncMock()) as recorder:
        yield recorder


@pytest.fixture
def client(
    mock_db: MagicMock,
    registry: MagicMock,
    chat: MagicMock,
    search_service: MagicMock,
    vector_store: Any,
    traffic: AsyncMock,
) -> Iterator[TestClient]:
    app.dependency_overrides[get_db] = lambda: mock_db
    app.dependency_overrides[get_document_registry] = lambda: registry
    app.dependency_overrides[get_chat_service] = lambda: chat
    app.dependency_overrides[get_vector_search_service] = lambda: search_service
    app.dependency_overrides[get_vector_store] = lambda: vector_store
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestMarkdownCallback:
    def test_bad_token_is_401(
        self, client: TestClient, registry: MagicMock, mock_db: MagicMock, traffic: AsyncMock
    ) -> None:
        registry.apply_markdown = AsyncMock(side_effect=UnauthorizedError())

        response = client.post(
            f"/api/rag/document-callback/{DOC_ID}",
            json={"tenant_id": "tenant-a", "markdown": "# Doc"},
            headers={"Authorization": "Bearer wrong"},
        )

        assert response.status_code == 401
        assert response.json() == {
            "success": False,
            "error": {"code": "UNAUTHORIZED", "message": "Invalid callback credentials"},
        }
        mock_db.rollback.assert_awaited()
        record = traffic.call_args.args[0]
        assert record.response_status == 401
        assert record.request_headers["authorization"] == "[REDACTED]"

    def test_token_passed_from_bearer_header(self, client: TestClient, registry: MagicMock) -> None:
        doc = MagicMock(status="markdown_received")
        registry.apply_markdown = AsyncMock(return_value=doc)

        response = client.post(
            f"/api/rag/document-callback/{DOC_ID}",
            json={"tenant_id": "tenant-a", "markdown": "# Doc"},
            headers={"Authorization": "Bearer tok-1"},
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        args = registry.apply_markdown.await_args.args
        assert args[:4] == (DOC_ID, "tenant-a", "tok-1", "# Doc")

    def test_error_signal_fails_document(self, client: TestClient, registry: MagicMock) -> None:
        registry.fail_from_callback = AsyncMock(return_value=MagicMock(status="failed"))

        response = client.post(
            f"/api/rag/document-callback/{DOC_ID}",
            json={"tenant_id": "tenant-a", "error": "unsupported encoding"},
            headers={"Authorization": "Bearer tok-1"},
        )

        assert response.status_code == 200
        registry.fail_from_callback.assert_awaited_once()

    def test_internal_failure_acknowledged(self, client: TestClient, registry: MagicMock) -> None:
        registry.apply_markdown = AsyncMock(side_effect=RuntimeError("disk full"))

        response = client.post(
            f"/api/rag/document-callback/{DOC_ID}",
            json={"tenant_id": "tenant-a", "markdown": "# Doc"},
            headers={"Authorization": "Bearer tok-1"},
        )

        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_missing_markdown_and_error(self, client: TestClient) -> None:
        response = client.post(
            f"/api/rag/document-callback/{DOC_ID}",
            json={"tenant_id": "tenant-a"},
            headers={"Authorization": "Bearer tok-1"},
        )
        assert response.status_code == 400


class TestVectorCallback:
    def test_partial_batch_reported(self, client: TestClient, registry: MagicMock) -> None:
        registry.apply_vectors = AsyncMock(
            return_value=VectorApplyResult(
                stored=10,
                rejected=[
                    {
                        "index": 10,
                        "chunk_index": 10,
                        "reason": "Invalid embedding dimension. Expected 4, got 3",
                    }
                ],
                status="completed",
            )
        )

        response = client.post(
            "/api/rag/callback/cb-0001",
            json={
                "document_id": DOC_ID,
                "tenant_id": "tenant-a",
                "vectors": [{"chunk_text": "a", "embedding": [1.0, 0.0, 0.0, 0.0], "chunk_index": 0}],
            },
            headers={"X-Callback-Token": "tok-1"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["vectors_stored"] == 10
        assert body["vectors_rejected"][0]["chunk_index"] == 10
        assert body["status"] == "completed"
        kwargs = registry.apply_vectors.await_args.kwargs
        assert kwargs["token"] == "tok-1"
        assert kwargs["document_id"] == uuid.UUID(DOC_ID)

    def test_unknown_callback_id_is_404(self, client: TestClient, registry: MagicMock) -> None:
        registry.apply_vectors = AsyncMock(side_effect=DocumentNotFoundError())

        response = client.post(
            "/api/rag/callback/missing",
            json={"document_id": DOC_ID, "tenant_id": "tenant-a", "vectors": []},
            headers={"X-Callback-Token": "tok-1"},
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "DOCUMENT_NOT_FOUND"

    def test_malformed_body_is_400(self, client: TestClient, registry: MagicMock) -> None:
        response = client.post(
            "/api/rag/callback/cb-0001",
            json={"tenant_id": "tenant-a"},
            headers={"X-Callback-Token": "tok-1"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "BAD_REQUEST"


class TestChatCallback:
    def test_duplicate_is_409(self, client: TestClient, chat: MagicMock) -> None:
        chat.apply_callback = AsyncMock(side_effect=ConflictError())

        response = client.post(
            f"/api/rag/chat-callback/{MESSAGE_ID}",
            json={
                "conversation_id": CONVERSATION_ID,
                "tenant_id": "tenant-a",
                "ai_response": "second answer",
            },
            headers={"Authorization": "Bearer tok-1"},
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    def test_first_callback_applied(self, client: TestClient, chat: MagicMock) -> None:
        chat.apply_callback = AsyncMock(
            return_value=MagicMock(message_id=uuid.UUID(MESSAGE_ID), status="completed")
        )

        response = client.post(
            f"/api/rag/chat-callback/{MESSAGE_ID}",
            json={
                "conversation_id": CONVERSATION_ID,
                "tenant_id": "tenant-a",
                "ai_response": "Use the reset link.",
                "sources": [{"document_id": DOC_ID}],
                "processing_time_ms": 812,
            },
            headers={"Authorization": "Bearer tok-1"},
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "message_id": MESSAGE_ID, "status": "completed"}


class TestVectorSearch:
    def test_results_returned(self, client: TestClient, search_service: MagicMock) -> None:
        search_service.search = AsyncMock(
            return_value=SearchOutcome(
                results=[
                    ScoredChunk(
                        document_id=DOC_ID, chunk_text="Reset via email", chunk_index=2, similarity=0.91
                    )
                ],
                execution_time_ms=12,
            )
        )

        with patch("app.api.v1.search.record_search_log", AsyncMock()) as search_log:
            response = client.post(
                "/api/rag/vector-search",
                json={"query_embedding": [1.0, 0.0, 0.0, 0.0], "tenant_id": "tenant-a", "limit": 3},
                headers={"X-Callback-Token": "tok-1"},
            )

        assert response.status_code == 200
        body = response.json()
        assert body["results"][0]["chunk_index"] == 2
        assert body["execution_time_ms"] == 12
        assert search_service.search.await_args.kwargs["limit"] == 3
        assert search_log.call_args.kwargs["result_count"] == 1

    def test_dimension_mismatch_not_acknowledged(
        self, client: TestClient, search_service: MagicMock
    ) -> None:
        search_service.search = AsyncMock(side_effect=DimensionMismatchError(expected=1536, got=4))

        response = client.post(
            "/api/rag/vector-search",
            json={"query_embedding": [1.0, 0.0, 0.0, 0.0], "tenant_id": "tenant-a"},
            headers={"X-Callback-Token": "tok-1"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == (
            "Invalid embedding dimension. Expected 1536, got 4"
        )

    def test_limit_out_of_range(self, client: TestClient) -> None:
        response = client.post(
            "/api/rag/vector-search",
            json={"query_embedding": [1.0], "tenant_id": "tenant-a", "limit": 500},
            headers={"X-Callback-Token": "tok-1"},
        )
        assert response.status_code == 400


class TestDocumentSource:
    def _doc(self) -> MagicMock:
        doc = MagicMock()
        doc.tenant_id = "tenant-a"
        doc.original_filename = "hand book.pdf"
        doc.file_data = b"%PDF-1.0"
        return doc

    def test_download_with_tenant_token(self, client: TestClient, mock_db: MagicMock) -> None:
        result = MagicMock()
        result.scalar_one_or_none.return_value = self._doc()
        mock_db.execute = AsyncMock(return_value=result)
        tokens = MagicMock()
        tokens.authenticate = AsyncMock()
        app.dependency_overrides[get_token_store] = lambda: tokens

        response = client.get(f"/api/documents/{DOC_ID}", headers={"Authorization": "Bearer tok-1"})

        assert response.status_code == 200
        assert response.content == b"%PDF-1.0"
        assert response.headers["content-type"] == "application/pdf"
        assert "hand%20book.pdf" in response.headers["content-disposition"]
        tokens.authenticate.assert_awaited_once_with("tenant-a", "tok-1", "document_source")

    def test_missing_bearer_is_401(self, client: TestClient) -> None:
        response = client.get(f"/api/documents/{DOC_ID}")
        assert response.status_code == 401


class TestUpload:
    @pytest.fixture(autouse=True)
    def _tenant(self, sample_tenant: Any, push: Any) -> Iterator[None]:
        app.dependency_overrides[get_current_tenant] = lambda: sample_tenant
        app.dependency_overrides[get_push_channel] = lambda: push
        yield

    def test_upload_accepted_and_dispatch_scheduled(
        self, client: TestClient, registry: MagicMock, mock_db: MagicMock
    ) -> None:
        doc = MagicMock(id=uuid.UUID(DOC_ID), status="uploaded", original_filename="faq.md")
        registry.create = AsyncMock(return_value=doc)

        with patch("app.api.v1.documents._dispatch_document_background", AsyncMock()) as dispatch:
            response = client.post(
                "/api/rag/upload-document",
                files={"document": ("faq.md", b"# FAQ", "text/markdown")},
                headers={"X-API-Key": "key"},
            )

        assert response.status_code == 202
        assert response.json()["document_id"] == DOC_ID
        assert registry.create.await_args.kwargs["file_type"] == "md"
        mock_db.commit.assert_awaited()
        assert dispatch.call_args.kwargs["document_id"] == DOC_ID

    def test_unsupported_extension(self, client: TestClient) -> None:
        response = client.post(
            "/api/rag/upload-document",
            files={"document": ("run.exe", b"MZ", "application/octet-stream")},
            headers={"X-API-Key": "key"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_FILE_TYPE"

    def test_empty_file(self, client: TestClient) -> None:
        response = client.post(
            "/api/rag/upload-document",
            files={"document": ("faq.md", b"", "text/markdown")},
            headers={"X-API-Key": "key"},
        )
        assert response.status_code == 400
