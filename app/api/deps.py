"""Shared FastAPI dependencies: auth, database sessions, service injection.

The push channel and chat transport are chosen once during the FastAPI
lifespan and stored on app.state. Handlers get them via Depends(), never
by direct import and never by branching on configuration.
"""

from fastapi import Depends, Header, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidAPIKeyError
from app.core.security import hash_api_key
from app.db.postgres import get_async_session
from app.db.qdrant import VectorStore, get_vector_store as _get_vector_store
from app.models.tenant import Tenant
from app.services.chat.push import PushChannel
from app.services.chat.service import ChatService
from app.services.chat.transport import ChatTransport
from app.services.documents.registry import DocumentRegistry
from app.services.tokens import TenantTokenStore
from app.services.vectors import VectorSearchService


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

async def get_db(
    session: AsyncSession = Depends(get_async_session),
) -> AsyncSession:
    """Yield an async database session."""
    return session


# ---------------------------------------------------------------------------
# Qdrant
# ---------------------------------------------------------------------------

async def get_vector_store() -> VectorStore:
    """Return the singleton VectorStore wrapper."""
    return await _get_vector_store()


# ---------------------------------------------------------------------------
# Auth (user-facing routes only; callbacks authenticate by callback token)
# ---------------------------------------------------------------------------

async def get_current_tenant(
    x_api_key: str | None = Header(None, alias="X-API-Key"),
    db: AsyncSession = Depends(get_db),
) -> Tenant:
    """Authenticate and return the current tenant from the API key header."""
    if not x_api_key:
        raise InvalidAPIKeyError()

    key_hash = hash_api_key(x_api_key)
    result = await db.execute(
        select(Tenant).where(Tenant.api_key_hash == key_hash)
    )
    tenant = result.scalar_one_or_none()

    if tenant is None or not tenant.is_active:
        raise InvalidAPIKeyError()

    return tenant


# ---------------------------------------------------------------------------
# Singletons from app.state (set during lifespan)
# ---------------------------------------------------------------------------

def get_push_channel(request: Request) -> PushChannel:
    """Return the push channel chosen at startup (in-memory or Redis)."""
    return request.app.state.push_channel


def get_chat_transport(request: Request) -> ChatTransport:
    """Return the chat transport chosen at startup."""
    return request.app.state.chat_transport


# ---------------------------------------------------------------------------
# Service constructors, wired via Depends()
# ---------------------------------------------------------------------------

async def get_token_store(db: AsyncSession = Depends(get_db)) -> TenantTokenStore:
    return TenantTokenStore(db)


async def get_document_registry(
    db: AsyncSession = Depends(get_db),
    push: PushChannel = Depends(get_push_channel),
) -> DocumentRegistry:
    """Return a DocumentRegistry bound to the request session."""
    return DocumentRegistry(db=db, push=push)


async def get_chat_service(
    db: AsyncSession = Depends(get_db),
    push: PushChannel = Depends(get_push_channel),
    transport: ChatTransport = Depends(get_chat_transport),
) -> ChatService:
    """Return a ChatService bound to the request session."""
    return ChatService(db=db, push=push, transport=transport)


async def get_vector_search_service(
    db: AsyncSession = Depends(get_db),
    store: VectorStore = Depends(get_vector_store),
) -> VectorSearchService:
    return VectorSearchService(db=db, store=store)
