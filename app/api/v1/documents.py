"""Document upload, status and vector management endpoints (X-API-Key)."""

import os
from uuid import UUID

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, File, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import (
    get_current_tenant,
    get_db,
    get_document_registry,
    get_push_channel,
    get_vector_store,
)
from app.core.config import settings
from app.core.exceptions import BadRequestError, ConflictError, InvalidFileTypeError
from app.db.postgres import session_scope
from app.db.qdrant import VectorStore
from app.models.tenant import Tenant
from app.schemas.documents import (
    DocumentListItem,
    DocumentListResponse,
    DocumentRetryResponse,
    DocumentStatusResponse,
    RetryQueueState,
    UploadResponse,
    VectorDeleteResponse,
    VectorStatsResponse,
)
from app.services.chat.push import KNOWLEDGE_TOPIC, PushChannel, publish_quietly
from app.services.documents.registry import DocumentRegistry
from app.services.documents.state import DocumentStatus

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/rag", tags=["documents"])

ALLOWED_EXTENSIONS = frozenset({
    "pdf", "doc", "docx", "ppt", "pptx", "xls", "xlsx", "rtf",
    "html", "htm", "csv", "txt", "md", "json", "xml",
    "epub", "odt", "ods", "odp",
    "png", "jpg", "jpeg", "gif", "bmp", "tiff", "webp",
})


def _get_extension(filename: str) -> str:
    """Extract file extension (lowercase, no dot)."""
    _, ext = os.path.splitext(filename)
    return ext.lstrip(".").lower()


async def _dispatch_document_background(
    document_id: str,
    tenant_id: str,
    push: PushChannel,
) -> None:
    """Dispatch after the upload has committed, with its own DB session."""
    try:
        async with session_scope() as db:
            registry = DocumentRegistry(db=db, push=push)
            await registry.dispatch(document_id, tenant_id)
    except Exception as e:
        logger.error(
            "background_dispatch_failed",
            document_id=document_id,
            tenant_id=tenant_id,
            error=str(e),
        )


@router.post("/upload-document", status_code=202, response_model=UploadResponse)
async def upload_document(
    background_tasks: BackgroundTasks,
    document: UploadFile = File(...),
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
    registry: DocumentRegistry = Depends(get_document_registry),
    push: PushChannel = Depends(get_push_channel),
) -> UploadResponse:
    """Store a document and hand it to the processing service."""
    if not document.filename:
        raise InvalidFileTypeError("No filename provided")

    ext = _get_extension(document.filename)
    if ext not in ALLOWED_EXTENSIONS:
        raise InvalidFileTypeError(f"File type '.{ext}' not supported")

    data = await document.read()
    if not data:
        raise BadRequestError("Uploaded file is empty")
    if len(data) > settings.max_upload_bytes:
        raise BadRequestError(
            f"File exceeds the {settings.max_upload_bytes} byte limit", code="FILE_TOO_LARGE"
        )

    tenant_id = str(tenant.id)
    doc = await registry.create(
        tenant_id=tenant_id,
        original_filename=document.filename,
        file_type=ext,
        file_data=data,
    )
    await db.commit()

    await publish_quietly(
        push,
        tenant_id,
        KNOWLEDGE_TOPIC,
        {
            "type": "document-uploaded",
            "document_id": str(doc.id),
            "original_filename": doc.original_filename,
            "status": doc.status,
        },
    )
    background_tasks.add_task(
        _dispatch_document_background,
        document_id=str(doc.id),
        tenant_id=tenant_id,
        push=push,
    )

    return UploadResponse(
        document_id=doc.id,
        status=doc.status,
        message="Document uploaded. Processing started.",
    )


@router.get("/documents", response_model=DocumentListResponse)
async def list_documents(
    tenant: Tenant = Depends(get_current_tenant),
    registry: DocumentRegistry = Depends(get_document_registry),
) -> DocumentListResponse:
    """List the tenant's documents, newest first."""
    docs = await registry.list_for_tenant(str(tenant.id))
    return DocumentListResponse(
        documents=[DocumentListItem.model_validate(d) for d in docs]
    )


@router.get("/document-status/{document_id}", response_model=DocumentStatusResponse)
async def get_document_status(
    document_id: UUID,
    tenant: Tenant = Depends(get_current_tenant),
    registry: DocumentRegistry = Depends(get_document_registry),
) -> DocumentStatusResponse:
    """Processing status, result-channel arrival and latest dispatch retry state."""
    doc = await registry.get(document_id, str(tenant.id))
    entry = await registry.latest_webhook(doc.id)

    return DocumentStatusResponse(
        document_id=doc.id,
        status=doc.status,
        has_markdown=doc.processed_markdown is not None,
        vector_count=doc.vector_count or 0,
        error_message=doc.error_message,
        markdown_received_at=doc.markdown_received_at,
        vectors_received_at=doc.vectors_received_at,
        webhook=RetryQueueState.model_validate(entry) if entry is not None else None,
    )


@router.post("/document-retry/{document_id}", status_code=202, response_model=DocumentRetryResponse)
async def retry_document(
    document_id: UUID,
    background_tasks: BackgroundTasks,
    tenant: Tenant = Depends(get_current_tenant),
    registry: DocumentRegistry = Depends(get_document_registry),
    push: PushChannel = Depends(get_push_channel),
) -> DocumentRetryResponse:
    """Re-dispatch a document that never got past ``processing``."""
    doc = await registry.get(document_id, str(tenant.id))
    if doc.status not in (DocumentStatus.UPLOADED.value, DocumentStatus.PROCESSING.value):
        raise ConflictError(f"Document is '{doc.status}' and cannot be re-dispatched")

    background_tasks.add_task(
        _dispatch_document_background,
        document_id=str(doc.id),
        tenant_id=str(tenant.id),
        push=push,
    )
    logger.info("document_retry_requested", document_id=str(doc.id), tenant_id=str(tenant.id))
    return DocumentRetryResponse(
        document_id=doc.id,
        status=doc.status,
        message="Dispatch scheduled",
    )


@router.get("/vectors/stats", response_model=VectorStatsResponse)
async def vector_stats(
    tenant: Tenant = Depends(get_current_tenant),
    store: VectorStore = Depends(get_vector_store),
) -> VectorStatsResponse:
    tenant_id = str(tenant.id)
    return VectorStatsResponse(
        total_vectors=await store.count(tenant_id),
        documents_with_vectors=len(await store.document_ids(tenant_id)),
        dimension=store.dimension,
    )


@router.delete("/documents/{document_id}/vectors", response_model=VectorDeleteResponse)
async def delete_document_vectors(
    document_id: UUID,
    tenant: Tenant = Depends(get_current_tenant),
    registry: DocumentRegistry = Depends(get_document_registry),
    store: VectorStore = Depends(get_vector_store),
) -> VectorDeleteResponse:
    """Remove every chunk of a document. Required before it can be re-vectorised."""
    removed = await registry.clear_vectors(document_id, str(tenant.id), store)
    return VectorDeleteResponse(document_id=document_id, deleted=removed)
