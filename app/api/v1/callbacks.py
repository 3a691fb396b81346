"""Inbound callbacks from the external processing service.

    POST /api/rag/document-callback/{document_id}   Authorization: Bearer
    POST /api/rag/callback/{callback_id}            X-Callback-Token
    POST /api/rag/chat-callback/{message_id}        Authorization: Bearer
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_chat_service, get_db, get_document_registry, get_vector_store
from app.api.v1.ack import respond
from app.core.exceptions import BadRequestError
from app.db.qdrant import VectorStore
from app.schemas.callbacks import (
    CallbackAck,
    ChatCallbackRequest,
    ChatCallbackResponse,
    MarkdownCallbackRequest,
    RejectedVector,
    VectorCallbackRequest,
    VectorCallbackResponse,
)
from app.services.chat.service import ChatService
from app.services.documents.registry import DocumentRegistry
from app.services.webhooks.protocol import Endpoint, extract_token

router = APIRouter(prefix="/rag", tags=["callbacks"])


@router.post("/document-callback/{document_id}", response_model=CallbackAck)
async def markdown_callback(
    document_id: str,
    body: MarkdownCallbackRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    registry: DocumentRegistry = Depends(get_document_registry),
) -> JSONResponse:
    """Processed markdown for a document, or an explicit processing error."""
    token = extract_token(request, Endpoint.DOCUMENT_CALLBACK)

    async def apply() -> CallbackAck:
        if body.error:
            doc = await registry.fail_from_callback(document_id, body.tenant_id, token, body.error)
            return CallbackAck(success=True, message=f"Document marked {doc.status}")
        if body.markdown is None:
            raise BadRequestError("Either markdown or error is required")
        doc = await registry.apply_markdown(
            document_id, body.tenant_id, token, body.markdown, metadata=body.metadata
        )
        return CallbackAck(success=True, message=f"Markdown received, document is {doc.status}")

    return await respond(request, background_tasks, db, Endpoint.DOCUMENT_CALLBACK.value, apply)


@router.post("/callback/{callback_id}", response_model=VectorCallbackResponse)
async def vector_callback(
    callback_id: str,
    body: VectorCallbackRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    registry: DocumentRegistry = Depends(get_document_registry),
    store: VectorStore = Depends(get_vector_store),
) -> JSONResponse:
    """Chunk embeddings for a document. Valid entries are stored even if others are rejected."""
    token = extract_token(request, Endpoint.VECTOR_CALLBACK)

    async def apply() -> VectorCallbackResponse:
        outcome = await registry.apply_vectors(
            callback_id=callback_id,
            document_id=body.document_id,
            tenant_id=body.tenant_id,
            token=token,
            vectors=body.vectors,
            store=store,
        )
        return VectorCallbackResponse(
            success=outcome.accepted > 0,
            vectors_stored=outcome.stored,
            vectors_rejected=[RejectedVector(**r) for r in outcome.rejected],
            duplicates_skipped=outcome.duplicates_skipped,
            status=outcome.status,
            message=None if outcome.accepted else "No valid vectors in batch",
        )

    return await respond(request, background_tasks, db, Endpoint.VECTOR_CALLBACK.value, apply)


@router.post("/chat-callback/{message_id}", response_model=ChatCallbackResponse)
async def chat_callback(
    message_id: str,
    body: ChatCallbackRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    chat: ChatService = Depends(get_chat_service),
) -> JSONResponse:
    """AI response for one chat message. Only the first valid callback is applied."""
    token = extract_token(request, Endpoint.CHAT_CALLBACK)

    async def apply() -> ChatCallbackResponse:
        exchange = await chat.apply_callback(
            message_id=message_id,
            tenant_id=body.tenant_id,
            token=token,
            conversation_id=body.conversation_id,
            ai_response=body.ai_response,
            sources=body.sources,
            processing_time_ms=body.processing_time_ms,
        )
        return ChatCallbackResponse(
            success=True, message_id=exchange.message_id, status=exchange.status
        )

    return await respond(request, background_tasks, db, Endpoint.CHAT_CALLBACK.value, apply)
