"""Tenant-scoped similarity search used by the processing service.

Authentication happens here, not in the vector store: the caller presents
the tenant's callback token, the token store decides, and only then does a
query reach the tenant's own collection. Per-call execution time is logged
to ``vector_search_logs`` after the response, in its own session.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.postgres import session_scope
from app.db.qdrant import ScoredChunk, VectorStore
from app.models.observability import VectorSearchLog
from app.services.tokens import TenantTokenStore
from app.services.webhooks.protocol import Endpoint

logger = structlog.get_logger(__name__)


@dataclass
class SearchOutcome:
    results: list[ScoredChunk]
    execution_time_ms: int


class VectorSearchService:
    def __init__(self, db: AsyncSession, store: VectorStore) -> None:
        self._tokens = TenantTokenStore(db)
        self._store = store

    async def search(
        self,
        tenant_id: str,
        token: str | None,
        query_embedding: list[float],
        limit: int = 5,
        threshold: float = 0.7,
    ) -> SearchOutcome:
        await self._tokens.authenticate(tenant_id, token, Endpoint.VECTOR_SEARCH.value)
        # Reject a wrong-length query before timing starts.
        self._store.check_dimension(query_embedding)

        started = time.perf_counter()
        results = await self._store.search(
            tenant_id, query_embedding, limit=limit, threshold=threshold
        )
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        logger.info(
            "vector_search_complete",
            tenant_id=tenant_id,
            result_count=len(results),
            limit=limit,
            threshold=threshold,
            execution_time_ms=elapsed_ms,
        )
        return SearchOutcome(results=results, execution_time_ms=elapsed_ms)


async def record_search_log(
    tenant_id: str,
    result_count: int,
    threshold: float,
    limit: int,
    execution_time_ms: int,
    message_id: Any = None,
    session_factory=session_scope,
) -> None:
    """Background task: one row per search. Failures are logged and dropped."""
    try:
        async with session_factory() as db:
            db.add(
                VectorSearchLog(
                    tenant_id=tenant_id,
                    message_id=str(message_id) if message_id else None,
                    result_count=result_count,
                    threshold=threshold,
                    result_limit=limit,
                    execution_time_ms=execution_time_ms,
                    created_at=datetime.now(timezone.utc),
                )
            )
    except Exception as e:
        logger.warning("vector_search_log_failed", tenant_id=tenant_id, error=str(e))
