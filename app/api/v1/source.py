"""Document source download for the processing service.

    GET /api/documents/{document_id}    Authorization: Bearer {callback_token}
"""

import mimetypes
from urllib.parse import quote
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import undefer

from app.api.deps import get_db, get_token_store
from app.core.exceptions import DocumentNotFoundError, UnauthorizedError
from app.models.document import Document
from app.services.tokens import TenantTokenStore
from app.services.webhooks.protocol import Endpoint, extract_token

router = APIRouter(prefix="/documents", tags=["documents"])


@router.get("/{document_id}")
async def download_document(
    document_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    tokens: TenantTokenStore = Depends(get_token_store),
) -> Response:
    """Stored bytes of a document, for the tenant whose token is presented."""
    token = extract_token(request, Endpoint.DOCUMENT_SOURCE)
    if token is None:
        raise UnauthorizedError()

    result = await db.execute(
        select(Document)
        .options(undefer(Document.file_data))
        .where(Document.id == document_id)
    )
    doc = result.scalar_one_or_none()
    if doc is None:
        raise DocumentNotFoundError()
    await tokens.authenticate(doc.tenant_id, token, Endpoint.DOCUMENT_SOURCE.value)
    if doc.file_data is None:
        raise DocumentNotFoundError("Document has no stored source")

    media_type = mimetypes.guess_type(doc.original_filename)[0] or "application/octet-stream"
    return Response(
        content=doc.file_data,
        media_type=media_type,
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(doc.original_filename)}"},
    )
