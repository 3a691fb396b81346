"""Vector similarity search for the external processing service.

    POST /api/rag/vector-search    X-Callback-Token
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db, get_vector_search_service
from app.api.v1.ack import respond
from app.schemas.search import SearchResult, VectorSearchRequest, VectorSearchResponse
from app.services.vectors import VectorSearchService, record_search_log
from app.services.webhooks.protocol import Endpoint, extract_token

router = APIRouter(prefix="/rag", tags=["search"])


@router.post("/vector-search", response_model=VectorSearchResponse)
async def vector_search(
    body: VectorSearchRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    service: VectorSearchService = Depends(get_vector_search_service),
) -> JSONResponse:
    """Top chunks for the calling tenant only, similarity >= threshold."""
    token = extract_token(request, Endpoint.VECTOR_SEARCH)

    async def run() -> VectorSearchResponse:
        outcome = await service.search(
            tenant_id=body.tenant_id,
            token=token,
            query_embedding=body.query_embedding,
            limit=body.limit,
            threshold=body.threshold,
        )
        background_tasks.add_task(
            record_search_log,
            tenant_id=body.tenant_id,
            result_count=len(outcome.results),
            threshold=body.threshold,
            limit=body.limit,
            execution_time_ms=outcome.execution_time_ms,
            message_id=body.message_id,
        )
        return VectorSearchResponse(
            results=[
                SearchResult(
                    document_id=r.document_id,
                    chunk_text=r.chunk_text,
                    chunk_index=r.chunk_index,
                    similarity=r.similarity,
                    metadata=r.metadata,
                )
                for r in outcome.results
            ],
            execution_time_ms=outcome.execution_time_ms,
        )

    return await respond(
        request,
        background_tasks,
        db,
        Endpoint.VECTOR_SEARCH.value,
        run,
        acknowledge_failures=False,
    )
