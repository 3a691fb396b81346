"""Per-tenant callback token store.

The single trust anchor for every inbound callback and every inbound
vector-search call. One long-lived token per tenant, created lazily the
first time the tenant dispatches work, rotated only by overwrite.

Creation is race-safe: ``INSERT ... ON CONFLICT DO NOTHING`` on the
``tenant_id`` primary key, then a read of whichever row won.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import UnauthorizedError
from app.core.security import generate_callback_token, tokens_match
from app.models.tenant_token import TenantToken

logger = structlog.get_logger(__name__)


class TenantTokenStore:
    """Issues and validates callback tokens, keyed by tenant id."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get(self, tenant_id: str) -> str | None:
        result = await self._db.execute(
            select(TenantToken.callback_token).where(TenantToken.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    async def get_or_create_token(self, tenant_id: str) -> str:
        """Return the tenant's token, generating and persisting one on first use."""
        existing = await self.get(tenant_id)
        if existing is not None:
            return existing

        await self._db.execute(
            pg_insert(TenantToken)
            .values(tenant_id=tenant_id, callback_token=generate_callback_token())
            .on_conflict_do_nothing(index_elements=[TenantToken.tenant_id])
        )
        token = await self.get(tenant_id)
        if token is None:
            # Row vanished between insert and read; nothing sane to hand out.
            raise UnauthorizedError("Callback token unavailable")
        logger.info("tenant_token_issued", tenant_id=tenant_id)
        return token

    async def rotate(self, tenant_id: str) -> str:
        """Overwrite the tenant's token with a fresh one. Old token stops validating."""
        token = generate_callback_token()
        now = datetime.now(timezone.utc)
        stmt = pg_insert(TenantToken).values(
            tenant_id=tenant_id, callback_token=token, rotated_at=now
        )
        await self._db.execute(
            stmt.on_conflict_do_update(
                index_elements=[TenantToken.tenant_id],
                set_={"callback_token": token, "rotated_at": now},
            )
        )
        logger.info("tenant_token_rotated", tenant_id=tenant_id)
        return token

    async def validate(self, tenant_id: str | None, token: str | None) -> bool:
        """Constant-time check of ``token`` against the tenant's active token."""
        expected = await self.get(tenant_id) if tenant_id else None
        return tokens_match(token, expected)

    async def authenticate(self, tenant_id: str | None, token: str | None, endpoint: str) -> None:
        """Raise UnauthorizedError unless the token belongs to the tenant.

        An unknown tenant and a wrong token are indistinguishable to the caller.
        """
        if not await self.validate(tenant_id, token):
            logger.warning(
                "callback_auth_failed",
                endpoint=endpoint,
                tenant_id=tenant_id,
                token_present=bool(token),
            )
            raise UnauthorizedError()
