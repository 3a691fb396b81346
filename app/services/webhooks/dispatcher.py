"""Outbound webhook delivery to the external processing service.

WebhookDispatcher.send() never raises on delivery problems. A non-2xx
response, a transport error or a timeout is turned into a PendingWebhook
row (attempt_count = 0) for the retry worker, and the caller gets an
"accepted" DeliveryResult either way.

``deliver()`` is the raw single attempt. The retry worker calls it
directly so a failed retry is never re-enqueued as a new row.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import DeliveryFailure
from app.models.pending_webhook import PendingWebhook
from app.services.tokens import TenantTokenStore
from app.services.webhooks.protocol import AUTH_SCHEMES, AuthScheme, Endpoint, auth_headers

logger = structlog.get_logger(__name__)

# Delay before retry attempt 1, 2, 3.
BACKOFF_MINUTES = (1, 5, 15)


@dataclass
class DeliveryResult:
    """Outcome of send(). ``accepted`` is always True for the caller."""

    accepted: bool = True
    delivered: bool = False
    status_code: int | None = None
    pending_webhook_id: uuid.UUID | None = None
    error: str | None = None


class WebhookDispatcher:
    """POSTs processing requests and parks failed ones in the retry queue."""

    def __init__(
        self,
        db: AsyncSession,
        timeout: float | None = None,
        max_attempts: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._db = db
        self._tokens = TenantTokenStore(db)
        self._timeout = timeout if timeout is not None else settings.webhook_timeout_seconds
        self._max_attempts = max_attempts if max_attempts is not None else settings.webhook_max_attempts
        self._transport = transport

    async def deliver(
        self,
        target_url: str,
        payload: dict[str, Any],
        token: str,
        auth_scheme: AuthScheme | str = AuthScheme.BEARER,
    ) -> int:
        """Single POST attempt. Returns the 2xx status or raises DeliveryFailure."""
        headers = {"Content-Type": "application/json", **auth_headers(auth_scheme, token)}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(target_url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise DeliveryFailure(f"Timed out after {self._timeout}s: {e}") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise DeliveryFailure(f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            raise DeliveryFailure(
                f"HTTP {response.status_code}: {response.text[:200]}",
                status=response.status_code,
            )
        return response.status_code

    async def send(
        self,
        target_url: str,
        payload: dict[str, Any],
        tenant_id: str,
        endpoint: Endpoint = Endpoint.DOCUMENT_PROCESSING,
        resource_id: str | None = None,
    ) -> DeliveryResult:
        """Deliver once; on failure enqueue for retry. Never raises DeliveryFailure."""
        scheme = AUTH_SCHEMES[endpoint]
        token = await self._tokens.get_or_create_token(tenant_id)
        try:
            status_code = await self.deliver(target_url, payload, token, scheme)
        except DeliveryFailure as e:
            entry = await self.enqueue(
                target_url=target_url,
                payload=payload,
                tenant_id=tenant_id,
                endpoint=endpoint,
                resource_id=resource_id,
                error=e.message,
            )
            logger.warning(
                "webhook_delivery_queued",
                endpoint=endpoint.value,
                tenant_id=tenant_id,
                resource_id=resource_id,
                upstream_status=e.upstream_status,
                error=e.message,
                pending_webhook_id=str(entry.id),
            )
            return DeliveryResult(
                delivered=False,
                status_code=e.upstream_status,
                pending_webhook_id=entry.id,
                error=e.message,
            )

        logger.info(
            "webhook_delivered",
            endpoint=endpoint.value,
            tenant_id=tenant_id,
            resource_id=resource_id,
            status_code=status_code,
        )
        return DeliveryResult(delivered=True, status_code=status_code)

    async def enqueue(
        self,
        target_url: str,
        payload: dict[str, Any],
        tenant_id: str,
        endpoint: Endpoint,
        resource_id: str | None,
        error: str | None,
    ) -> PendingWebhook:
        now = datetime.now(timezone.utc)
        entry = PendingWebhook(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            webhook_type=endpoint.value,
            resource_id=resource_id,
            target_url=target_url,
            payload=payload,
            auth_scheme=AUTH_SCHEMES[endpoint].value,
            attempt_count=0,
            max_attempts=self._max_attempts,
            next_retry_at=now + timedelta(minutes=BACKOFF_MINUTES[0]),
            last_error=error,
            status="pending",
            created_at=now,
            updated_at=now,
        )
        self._db.add(entry)
        await self._db.flush()
        return entry
