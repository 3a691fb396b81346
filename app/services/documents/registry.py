"""Document registry: creation, dispatch and the two result channels.

Markdown and vector callbacks may arrive in either order, concurrently, and
more than once. Both apply paths take ``SELECT ... FOR UPDATE`` on the
document row, so the read-modify-write of ``status`` is serialised and the
``completed`` transition happens exactly once.

Callback authentication order is fixed:
1. tenant token checked against the token store (401)
2. document looked up (404)
3. tenant/document correlation checked (401, same generic message)
No mutation happens before all three pass.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    BadRequestError,
    ConflictError,
    DocumentNotFoundError,
    UnauthorizedError,
)
from app.core.security import generate_callback_id
from app.db.qdrant import ChunkPoint, VectorStore, chunk_point_id
from app.models.document import Document
from app.models.pending_webhook import PendingWebhook
from app.schemas.callbacks import VectorEntry
from app.services.chat.push import KNOWLEDGE_TOPIC, PushChannel, publish_quietly
from app.services.documents.state import DocumentStatus, is_terminal, status_after_result
from app.services.tokens import TenantTokenStore
from app.services.webhooks.dispatcher import DeliveryResult, WebhookDispatcher
from app.services.webhooks.protocol import Endpoint

logger = structlog.get_logger(__name__)

_REDISPATCHABLE = (DocumentStatus.UPLOADED.value, DocumentStatus.PROCESSING.value)


def _parse_uuid(value: Any) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


@dataclass
class VectorApplyResult:
    """Outcome of one vector callback."""

    stored: int = 0
    duplicates_skipped: int = 0
    rejected: list[dict[str, Any]] = field(default_factory=list)
    status: str | None = None

    @property
    def accepted(self) -> int:
        return self.stored + self.duplicates_skipped


class DocumentRegistry:
    """Owns every write to the ``documents`` table."""

    def __init__(
        self,
        db: AsyncSession,
        push: PushChannel | None = None,
        dispatcher: WebhookDispatcher | None = None,
    ) -> None:
        self._db = db
        self._push = push
        self._tokens = TenantTokenStore(db)
        self._dispatcher = dispatcher or WebhookDispatcher(db)

    # -- Creation / reads ------------------------------------------------------

    async def create(
        self,
        tenant_id: str,
        original_filename: str,
        file_type: str,
        file_data: bytes,
        created_by: str | None = None,
        content: str = "",
    ) -> Document:
        """Persist a new document in ``uploaded`` bound to the tenant's callback token."""
        token = await self._tokens.get_or_create_token(tenant_id)
        now = datetime.now(timezone.utc)
        doc = Document(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            callback_id=generate_callback_id(),
            callback_token=token,
            status=DocumentStatus.UPLOADED.value,
            content=content or f"[{file_type.upper()} document: {original_filename}]",
            file_type=file_type,
            file_size=len(file_data),
            original_filename=original_filename,
            file_data=file_data,
            metadata_={},
            created_by=created_by,
            vector_count=0,
            created_at=now,
            updated_at=now,
        )
        self._db.add(doc)
        await self._db.flush()
        logger.info(
            "document_created",
            document_id=str(doc.id),
            tenant_id=tenant_id,
            file_type=file_type,
            file_size=doc.file_size,
        )
        return doc

    async def get(self, document_id: Any, tenant_id: str) -> Document:
        """Tenant-scoped read. Another tenant's document is indistinguishable from none."""
        doc_uuid = _parse_uuid(document_id)
        if doc_uuid is None:
            raise DocumentNotFoundError()
        result = await self._db.execute(
            select(Document).where(Document.id == doc_uuid, Document.tenant_id == tenant_id)
        )
        doc = result.scalar_one_or_none()
        if doc is None:
            raise DocumentNotFoundError()
        return doc

    async def list_for_tenant(self, tenant_id: str) -> Sequence[Document]:
        result = await self._db.execute(
            select(Document)
            .where(Document.tenant_id == tenant_id)
            .order_by(Document.created_at.desc())
        )
        return result.scalars().all()

    async def latest_webhook(self, document_id: Any) -> PendingWebhook | None:
        """Most recent retry-queue entry for this document's dispatch, if any."""
        result = await self._db.execute(
            select(PendingWebhook)
            .where(
                PendingWebhook.webhook_type == Endpoint.DOCUMENT_PROCESSING.value,
                PendingWebhook.resource_id == str(document_id),
            )
            .order_by(PendingWebhook.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # -- Dispatch ----------------------------------------------------------------

    def build_dispatch_payload(self, doc: Document, token: str) -> dict[str, Any]:
        base = settings.app_url.rstrip("/")
        vector_callback_url = f"{base}/api/rag/callback/{doc.callback_id}"
        return {
            "source": settings.webhook_source,
            "action": Endpoint.DOCUMENT_PROCESSING.value,
            "tenant_id": doc.tenant_id,
            "document_id": str(doc.id),
            "document_url": f"{base}/api/documents/{doc.id}",
            "markdown_callback_url": f"{base}/api/rag/document-callback/{doc.id}",
            "vector_callback_url": vector_callback_url,
            "callback_url": vector_callback_url,
            "callback_token": token,
            "file_type": doc.file_type,
            "file_size": doc.file_size,
            "original_filename": doc.original_filename,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def dispatch(self, document_id: Any, tenant_id: str) -> DeliveryResult:
        """Move the document to ``processing`` and hand it to the processing service.

        The status change is committed before the outbound call, so a callback
        racing back from a fast processor always finds ``processing``.
        """
        doc = await self.get(document_id, tenant_id)
        if doc.status not in _REDISPATCHABLE:
            raise ConflictError(f"Document is '{doc.status}' and cannot be dispatched")

        token = await self._tokens.get_or_create_token(tenant_id)
        if doc.status == DocumentStatus.UPLOADED.value:
            doc.status = DocumentStatus.PROCESSING.value
            doc.updated_at = datetime.now(timezone.utc)
        await self._db.commit()

        result = await self._dispatcher.send(
            settings.processing_webhook_url,
            self.build_dispatch_payload(doc, token),
            tenant_id,
            endpoint=Endpoint.DOCUMENT_PROCESSING,
            resource_id=str(doc.id),
        )
        await self._db.commit()

        logger.info(
            "document_dispatched",
            document_id=str(doc.id),
            tenant_id=tenant_id,
            delivered=result.delivered,
            pending_webhook_id=str(result.pending_webhook_id) if result.pending_webhook_id else None,
        )
        await self._publish_status(doc)
        return result

    # -- Callbacks ---------------------------------------------------------------

    async def apply_markdown(
        self,
        document_id: Any,
        tenant_id: str,
        token: str | None,
        markdown: str,
        metadata: dict[str, Any] | None = None,
    ) -> Document:
        """Store processed markdown and advance the lattice. Safe to repeat."""
        await self._tokens.authenticate(tenant_id, token, Endpoint.DOCUMENT_CALLBACK.value)
        doc = await self._lock_by_id(document_id)
        self._check_tenant(doc, tenant_id, Endpoint.DOCUMENT_CALLBACK)

        now = datetime.now(timezone.utc)
        previous = doc.status
        doc.processed_markdown = markdown
        if doc.markdown_received_at is None:
            doc.markdown_received_at = now
        if metadata:
            doc.metadata_ = {**(doc.metadata_ or {}), "markdown": metadata}
        doc.status = status_after_result(
            doc.status, markdown_seen=True, vectors_seen=doc.vectors_received_at is not None
        ).value
        doc.updated_at = now
        await self._db.commit()

        logger.info(
            "document_markdown_applied",
            document_id=str(doc.id),
            tenant_id=tenant_id,
            previous_status=previous,
            status=doc.status,
            markdown_length=len(markdown),
        )
        if doc.status != previous:
            await self._publish_status(doc)
        return doc

    async def apply_vectors(
        self,
        callback_id: str,
        document_id: Any,
        tenant_id: str,
        token: str | None,
        vectors: Sequence[VectorEntry],
        store: VectorStore,
    ) -> VectorApplyResult:
        """Validate and store a batch of chunks, then advance the lattice.

        Entries with the wrong embedding length are rejected one by one.
        A chunk_index already stored for the document (or repeated within the
        batch) is skipped as a duplicate; existing chunks are never rewritten.
        """
        await self._tokens.authenticate(tenant_id, token, Endpoint.VECTOR_CALLBACK.value)
        doc = await self._lock_by_callback_id(callback_id)
        self._check_tenant(doc, tenant_id, Endpoint.VECTOR_CALLBACK)
        if _parse_uuid(document_id) != doc.id:
            logger.warning(
                "callback_tenant_mismatch",
                endpoint=Endpoint.VECTOR_CALLBACK.value,
                callback_id=callback_id,
                document_id=str(document_id),
            )
            raise UnauthorizedError()
        if not vectors:
            raise BadRequestError("vectors must contain at least one entry")

        outcome = VectorApplyResult()
        candidates: list[ChunkPoint] = []
        seen_indexes: set[int] = set()
        for position, entry in enumerate(vectors):
            if len(entry.embedding) != store.dimension:
                outcome.rejected.append(
                    {
                        "index": position,
                        "chunk_index": entry.chunk_index,
                        "reason": (
                            f"Invalid embedding dimension. Expected {store.dimension}, "
                            f"got {len(entry.embedding)}"
                        ),
                    }
                )
                continue
            if entry.chunk_index in seen_indexes:
                outcome.duplicates_skipped += 1
                continue
            seen_indexes.add(entry.chunk_index)
            candidates.append(
                ChunkPoint(
                    document_id=str(doc.id),
                    chunk_index=entry.chunk_index,
                    chunk_text=entry.chunk_text,
                    embedding=entry.embedding,
                    metadata=entry.metadata or {},
                )
            )

        existing = await store.existing_point_ids(
            tenant_id,
            [chunk_point_id(tenant_id, c.document_id, c.chunk_index) for c in candidates],
        )
        fresh = [
            c for c in candidates
            if chunk_point_id(tenant_id, c.document_id, c.chunk_index) not in existing
        ]
        outcome.duplicates_skipped += len(candidates) - len(fresh)
        outcome.stored = await store.upsert_chunks(tenant_id, fresh)

        previous = doc.status
        if outcome.accepted:
            now = datetime.now(timezone.utc)
            if doc.vectors_received_at is None:
                doc.vectors_received_at = now
            doc.vector_count = (doc.vector_count or 0) + outcome.stored
            doc.status = status_after_result(
                doc.status,
                markdown_seen=doc.markdown_received_at is not None,
                vectors_seen=True,
            ).value
            doc.updated_at = now
        await self._db.commit()
        outcome.status = doc.status

        logger.info(
            "document_vectors_applied",
            document_id=str(doc.id),
            tenant_id=tenant_id,
            stored=outcome.stored,
            rejected=len(outcome.rejected),
            duplicates_skipped=outcome.duplicates_skipped,
            previous_status=previous,
            status=doc.status,
        )
        if doc.status != previous:
            await self._publish_status(doc)
        return outcome

    async def fail_from_callback(
        self,
        document_id: Any,
        tenant_id: str,
        token: str | None,
        error: str,
    ) -> Document:
        """Explicit error signal from the processing service."""
        await self._tokens.authenticate(tenant_id, token, Endpoint.DOCUMENT_CALLBACK.value)
        doc = await self._lock_by_id(document_id)
        self._check_tenant(doc, tenant_id, Endpoint.DOCUMENT_CALLBACK)
        return await self._fail_locked(doc, error)

    async def mark_failed(self, document_id: Any, reason: str) -> Document | None:
        """Terminal failure, e.g. after dispatch retries are exhausted. Never cleared."""
        try:
            doc = await self._lock_by_id(document_id)
        except DocumentNotFoundError:
            logger.warning("document_mark_failed_missing", document_id=str(document_id))
            return None
        return await self._fail_locked(doc, reason)

    async def clear_vectors(self, document_id: Any, tenant_id: str, store: VectorStore) -> int:
        """Explicitly remove every chunk of a document. Returns how many were removed."""
        doc = await self.get(document_id, tenant_id)
        filters = {"document_id": str(doc.id)}
        removed = await store.count(tenant_id, filters)
        await store.delete_by_filter(tenant_id, filters)
        doc.vector_count = 0
        doc.updated_at = datetime.now(timezone.utc)
        await self._db.commit()
        logger.info("document_vectors_cleared", document_id=str(doc.id), tenant_id=tenant_id, removed=removed)
        return removed

    # -- Internal ------------------------------------------------------------------

    async def _fail_locked(self, doc: Document, reason: str) -> Document:
        if is_terminal(doc.status):
            await self._db.commit()
            logger.info("document_already_terminal", document_id=str(doc.id), status=doc.status)
            return doc
        doc.status = DocumentStatus.FAILED.value
        doc.error_message = reason[:2000]
        doc.updated_at = datetime.now(timezone.utc)
        await self._db.commit()
        logger.warning(
            "document_failed", document_id=str(doc.id), tenant_id=doc.tenant_id, reason=reason
        )
        await self._publish_status(doc)
        return doc

    async def _lock_by_id(self, document_id: Any) -> Document:
        doc_uuid = _parse_uuid(document_id)
        if doc_uuid is None:
            raise DocumentNotFoundError()
        result = await self._db.execute(
            select(Document).where(Document.id == doc_uuid).with_for_update()
        )
        doc = result.scalar_one_or_none()
        if doc is None:
            raise DocumentNotFoundError()
        return doc

    async def _lock_by_callback_id(self, callback_id: str) -> Document:
        result = await self._db.execute(
            select(Document).where(Document.callback_id == callback_id).with_for_update()
        )
        doc = result.scalar_one_or_none()
        if doc is None:
            raise DocumentNotFoundError()
        return doc

    def _check_tenant(self, doc: Document, tenant_id: str, endpoint: Endpoint) -> None:
        if doc.tenant_id != tenant_id:
            logger.warning(
                "callback_tenant_mismatch",
                endpoint=endpoint.value,
                document_id=str(doc.id),
                claimed_tenant_id=tenant_id,
            )
            raise UnauthorizedError()

    async def _publish_status(self, doc: Document) -> None:
        await publish_quietly(
            self._push,
            doc.tenant_id,
            KNOWLEDGE_TOPIC,
            {
                "type": "document-status",
                "document_id": str(doc.id),
                "status": doc.status,
                "vector_count": doc.vector_count,
                "error_message": doc.error_message,
            },
        )
