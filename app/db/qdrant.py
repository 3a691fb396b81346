"""Qdrant async client wrapper for chunk embeddings and similarity search.

Collection naming convention: f"tenant_{tenant_id}", enforced here only.
Tenant isolation is structural: a search can only ever target the calling
tenant's collection, and every point additionally carries ``tenant_id`` in
its payload which every query filters on.

Point ids are deterministic (uuid5 of tenant/document/chunk_index) so the
same chunk delivered twice maps to the same point.

All Qdrant driver errors are caught and re-raised as QdrantConnectionError.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any

import structlog
from qdrant_client import models as qmodels
from qdrant_client.async_qdrant_client import AsyncQdrantClient

from app.core.config import settings
from app.core.exceptions import DimensionMismatchError, QdrantConnectionError

logger = structlog.get_logger(__name__)

_DISTANCE = qmodels.Distance.COSINE
_POINT_NAMESPACE = uuid.UUID("6f1b3c1e-2d4a-4f0e-9a57-3c1d8e5b7a20")
_TIE_WINDOW = 10  # extra candidates; a full page tied at the cut triggers a full fetch
_SCORE_EPSILON = 1e-6

if settings.qdrant_location:
    _client: AsyncQdrantClient = AsyncQdrantClient(location=settings.qdrant_location)
else:
    _client = AsyncQdrantClient(
        host=settings.qdrant_host,
        port=settings.qdrant_port,
        api_key=settings.qdrant_api_key or None,
        timeout=10.0,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _collection_name(tenant_id: str) -> str:
    """Canonical collection name for a tenant. Single source of truth."""
    return f"tenant_{tenant_id}"


def chunk_point_id(tenant_id: str, document_id: str, chunk_index: int) -> str:
    """Deterministic point id for one chunk of one document."""
    return str(uuid.uuid5(_POINT_NAMESPACE, f"{tenant_id}:{document_id}:{chunk_index}"))


@dataclass
class ChunkPoint:
    """A validated chunk ready to be written."""

    document_id: str
    chunk_index: int
    chunk_text: str
    embedding: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ScoredChunk:
    """One similarity-search hit."""

    document_id: str
    chunk_text: str
    chunk_index: int
    similarity: float
    metadata: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

async def get_vector_store() -> "VectorStore":
    """FastAPI dependency returning the singleton VectorStore wrapper."""
    return VectorStore(_client, dimension=settings.vector_dimension)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

async def close_qdrant() -> None:
    """Gracefully close the Qdrant connection."""
    logger.info("qdrant_shutdown")
    await _client.close()


# ---------------------------------------------------------------------------
# Service wrapper
# ---------------------------------------------------------------------------

class VectorStore:
    """High-level async wrapper over Qdrant operations.

    Every public method catches qdrant-client exceptions and re-raises
    as QdrantConnectionError for the API layer.
    """

    def __init__(self, client: AsyncQdrantClient, dimension: int) -> None:
        self._q = client
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    def check_dimension(self, vector: list[float] | None) -> None:
        """Raise DimensionMismatchError unless ``vector`` has exactly the configured length."""
        got = len(vector) if vector is not None else None
        if got != self._dimension:
            raise DimensionMismatchError(expected=self._dimension, got=got)

    # -- Collection management -----------------------------------------------

    async def create_collection_if_not_exists(self, tenant_id: str) -> str:
        """Ensure a collection exists for the tenant. Returns the collection name.

        Idempotent, safe to call on every callback.
        """
        name = _collection_name(tenant_id)
        try:
            exists = await self._q.collection_exists(collection_name=name)
            if not exists:
                await self._q.create_collection(
                    collection_name=name,
                    vectors_config=qmodels.VectorParams(
                        size=self._dimension,
                        distance=_DISTANCE,
                    ),
                )
                logger.info("qdrant_collection_created", collection=name)
            return name
        except Exception as e:
            logger.error("qdrant_create_collection_failed", collection=name, error=str(e))
            raise QdrantConnectionError(
                f"Failed to create/check Qdrant collection '{name}': {e}"
            ) from e

    # -- Vector operations ---------------------------------------------------

    async def existing_point_ids(self, tenant_id: str, point_ids: list[str]) -> set[str]:
        """Return the subset of ``point_ids`` already stored for the tenant."""
        if not point_ids:
            return set()
        name = _collection_name(tenant_id)
        try:
            if not await self._q.collection_exists(collection_name=name):
                return set()
            records = await self._q.retrieve(
                collection_name=name,
                ids=point_ids,
                with_payload=False,
                with_vectors=False,
            )
            return {str(r.id) for r in records}
        except Exception as e:
            logger.error("qdrant_retrieve_failed", collection=name, error=str(e))
            raise QdrantConnectionError(f"Qdrant retrieve failed: {e}") from e

    async def upsert_chunks(self, tenant_id: str, chunks: list[ChunkPoint]) -> int:
        """Write a batch of chunks into the tenant's collection. Returns the count written."""
        if not chunks:
            return 0
        for chunk in chunks:
            self.check_dimension(chunk.embedding)

        name = await self.create_collection_if_not_exists(tenant_id)
        try:
            points = [
                qmodels.PointStruct(
                    id=chunk_point_id(tenant_id, c.document_id, c.chunk_index),
                    vector=c.embedding,
                    payload={
                        "tenant_id": tenant_id,
                        "document_id": c.document_id,
                        "chunk_index": c.chunk_index,
                        "chunk_text": c.chunk_text,
                        "metadata": c.metadata,
                    },
                )
                for c in chunks
            ]
            await self._q.upsert(collection_name=name, points=points, wait=True)
            logger.debug("qdrant_upsert_ok", collection=name, point_count=len(points))
            return len(points)
        except Exception as e:
            logger.error(
                "qdrant_upsert_failed",
                collection=name,
                point_count=len(chunks),
                error=str(e),
            )
            raise QdrantConnectionError(f"Qdrant upsert failed: {e}") from e

    async def search(
        self,
        tenant_id: str,
        query_vector: list[float],
        limit: int = 5,
        threshold: float = 0.7,
    ) -> list[ScoredChunk]:
        """Cosine search scoped to one tenant.

        Returns at most ``limit`` chunks with similarity >= ``threshold``,
        ordered by similarity descending, ties by chunk_index ascending.
        When the cut at ``limit`` falls inside a run of equal scores, every
        point in that run is fetched before ordering, so the tie-break does
        not depend on which tied points Qdrant happened to return.
        """
        self.check_dimension(query_vector)
        name = _collection_name(tenant_id)
        page_size = limit + _TIE_WINDOW
        try:
            if not await self._q.collection_exists(collection_name=name):
                return []
            points = await self._query(name, tenant_id, query_vector, page_size, threshold)
            if len(points) == page_size:
                scores = sorted((p.score for p in points), reverse=True)
                boundary = scores[limit - 1]
                if scores[-1] >= boundary - _SCORE_EPSILON:
                    total = await self._q.count(
                        collection_name=name,
                        count_filter=self._build_filter({"tenant_id": tenant_id}),
                        exact=True,
                    )
                    points = await self._query(
                        name,
                        tenant_id,
                        query_vector,
                        max(total.count, page_size),
                        max(threshold, boundary - _SCORE_EPSILON),
                    )
        except Exception as e:
            logger.error("qdrant_search_failed", collection=name, error=str(e))
            raise QdrantConnectionError(f"Qdrant search failed: {e}") from e

        hits: list[ScoredChunk] = []
        for point in points:
            payload = point.payload or {}
            if payload.get("tenant_id") != tenant_id or point.score < threshold:
                continue
            hits.append(
                ScoredChunk(
                    document_id=str(payload.get("document_id")),
                    chunk_text=payload.get("chunk_text", ""),
                    chunk_index=int(payload.get("chunk_index", 0)),
                    similarity=float(point.score),
                    metadata=payload.get("metadata") or {},
                )
            )
        hits.sort(key=lambda h: (-h.similarity, h.chunk_index))
        logger.debug("qdrant_search_ok", collection=name, limit=limit, hit_count=len(hits))
        return hits[:limit]

    async def _query(
        self,
        name: str,
        tenant_id: str,
        query_vector: list[float],
        limit: int,
        score_threshold: float,
    ) -> list[qmodels.ScoredPoint]:
        response = await self._q.query_points(
            collection_name=name,
            query=query_vector,
            query_filter=self._build_filter({"tenant_id": tenant_id}),
            limit=limit,
            score_threshold=score_threshold,
            with_payload=True,
            with_vectors=False,
        )
        return list(response.points)

    async def count(self, tenant_id: str, filters: dict[str, Any] | None = None) -> int:
        """Number of chunks for the tenant, optionally filtered. 0 if no collection."""
        name = _collection_name(tenant_id)
        conditions = {"tenant_id": tenant_id, **(filters or {})}
        try:
            if not await self._q.collection_exists(collection_name=name):
                return 0
            result = await self._q.count(
                collection_name=name,
                count_filter=self._build_filter(conditions),
                exact=True,
            )
            return result.count
        except Exception as e:
            logger.error("qdrant_count_failed", collection=name, error=str(e))
            raise QdrantConnectionError(f"Qdrant count failed: {e}") from e

    async def document_ids(self, tenant_id: str, batch_size: int = 256) -> set[str]:
        """Distinct document ids that have at least one chunk."""
        name = _collection_name(tenant_id)
        found: set[str] = set()
        offset: str | int | None = None
        try:
            if not await self._q.collection_exists(collection_name=name):
                return found
            while True:
                records, next_offset = await self._q.scroll(
                    collection_name=name,
                    scroll_filter=self._build_filter({"tenant_id": tenant_id}),
                    limit=batch_size,
                    offset=offset,
                    with_payload=["document_id"],
                    with_vectors=False,
                )
                for record in records:
                    found.add(str((record.payload or {}).get("document_id")))
                if next_offset is None:
                    break
                offset = next_offset
            return found
        except Exception as e:
            logger.error("qdrant_scroll_failed", collection=name, error=str(e))
            raise QdrantConnectionError(f"Qdrant scroll failed: {e}") from e

    async def delete_by_filter(self, tenant_id: str, filters: dict[str, Any]) -> None:
        """Delete points matching the given filters from the tenant's collection.

        Filters dict maps payload field names to their expected values, e.g.:
            {"document_id": "abc-123"}
        """
        name = _collection_name(tenant_id)
        conditions = {"tenant_id": tenant_id, **filters}
        try:
            if not await self._q.collection_exists(collection_name=name):
                return
            await self._q.delete(
                collection_name=name,
                points_selector=qmodels.FilterSelector(
                    filter=self._build_filter(conditions),
                ),
                wait=True,
            )
            logger.info("qdrant_delete_ok", collection=name, filters=filters)
        except Exception as e:
            logger.error(
                "qdrant_delete_failed",
                collection=name,
                filters=filters,
                error=str(e),
            )
            raise QdrantConnectionError(f"Qdrant delete failed: {e}") from e

    # -- Internal helpers ----------------------------------------------------

    @staticmethod
    def _build_filter(filters: dict[str, Any]) -> qmodels.Filter:
        """Convert a simple {field: value} dict to a Qdrant Filter with must conditions."""
        must_conditions = [
            qmodels.FieldCondition(
                key=key,
                match=qmodels.MatchValue(value=value),
            )
            for key, value in filters.items()
        ]
        return qmodels.Filter(must=must_conditions)
