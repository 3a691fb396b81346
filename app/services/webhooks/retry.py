"""Retry queue worker for failed outbound dispatches.

One tick (``run_once``), driven by APScheduler once a minute:

1. Claim due rows atomically. ``UPDATE ... WHERE id IN (SELECT ... FOR
   UPDATE SKIP LOCKED)`` pushes ``next_retry_at`` forward by a lease, so an
   overlapping tick (or a second process) cannot pick the same rows.
2. Re-deliver each claimed row through ``WebhookDispatcher.deliver`` (the
   raw attempt, never ``send``, so nothing is re-enqueued).
3. Record the outcome. Attempts are spaced 1, 5 and 15 minutes apart (any
   further attempt waits 15). Reaching ``max_attempts`` marks the row
   ``failed`` and fails the owning document or chat exchange with it.

Only the platform's own outbound dispatches are retried, never callbacks.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import DeliveryFailure, ExhaustedRetriesError
from app.models.pending_webhook import PendingWebhook
from app.services.chat.push import PushChannel
from app.services.tokens import TenantTokenStore
from app.services.webhooks.dispatcher import BACKOFF_MINUTES, WebhookDispatcher
from app.services.webhooks.protocol import Endpoint

logger = structlog.get_logger(__name__)

# Claimed rows stay invisible to other ticks for this long.
CLAIM_LEASE = timedelta(minutes=10)

PENDING = "pending"
RETRYING = "retrying"
SUCCEEDED = "succeeded"
FAILED = "failed"


@dataclass
class RetryStats:
    claimed: int = 0
    succeeded: int = 0
    rescheduled: int = 0
    exhausted: int = 0


class RetryQueue:
    """Drains due PendingWebhook rows with fixed backoff."""

    def __init__(
        self,
        db: AsyncSession,
        dispatcher: WebhookDispatcher | None = None,
        push: PushChannel | None = None,
        batch_size: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._dispatcher = dispatcher or WebhookDispatcher(db)
        self._push = push
        self._tokens = TenantTokenStore(db)
        self._batch_size = batch_size or settings.retry_batch_size
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def claim_due(self, now: datetime) -> Sequence[PendingWebhook]:
        """Atomically lease up to ``batch_size`` due rows."""
        due = (
            select(PendingWebhook.id)
            .where(
                PendingWebhook.status.in_((PENDING, RETRYING)),
                PendingWebhook.next_retry_at <= now,
            )
            .order_by(PendingWebhook.next_retry_at.asc())
            .limit(self._batch_size)
            .with_for_update(skip_locked=True)
        )
        result = await self._db.execute(
            update(PendingWebhook)
            .where(PendingWebhook.id.in_(due))
            .values(next_retry_at=now + CLAIM_LEASE, updated_at=now)
            .returning(PendingWebhook)
            .execution_options(synchronize_session=False)
        )
        claimed = result.scalars().all()
        await self._db.commit()
        return claimed

    async def run_once(self) -> RetryStats:
        now = self._clock()
        stats = RetryStats()
        claimed = await self.claim_due(now)
        stats.claimed = len(claimed)

        for entry in claimed:
            token = await self._tokens.get(entry.tenant_id)
            try:
                if token is None:
                    raise DeliveryFailure("No callback token for tenant")
                await self._dispatcher.deliver(
                    entry.target_url, entry.payload, token, entry.auth_scheme
                )
            except DeliveryFailure as e:
                exhausted = await self.apply_failure(entry, e.message, now)
                if exhausted:
                    stats.exhausted += 1
                else:
                    stats.rescheduled += 1
            else:
                self.apply_success(entry, now)
                stats.succeeded += 1
            await self._db.commit()

        if stats.claimed:
            logger.info(
                "webhook_retry_tick",
                claimed=stats.claimed,
                succeeded=stats.succeeded,
                rescheduled=stats.rescheduled,
                exhausted=stats.exhausted,
            )
        return stats

    def apply_success(self, entry: PendingWebhook, now: datetime) -> None:
        entry.attempt_count += 1
        entry.status = SUCCEEDED
        entry.last_error = None
        entry.updated_at = now
        logger.info(
            "webhook_retry_succeeded",
            pending_webhook_id=str(entry.id),
            webhook_type=entry.webhook_type,
            resource_id=entry.resource_id,
            attempt=entry.attempt_count,
        )

    async def apply_failure(self, entry: PendingWebhook, error: str, now: datetime) -> bool:
        """Record a failed attempt. Returns True when the row became terminal."""
        entry.attempt_count += 1
        entry.last_error = error[:2000]
        entry.updated_at = now

        if entry.attempt_count >= entry.max_attempts:
            entry.status = FAILED
            exhausted = ExhaustedRetriesError(
                f"Delivery failed after {entry.attempt_count} retries: {error}"
            )
            logger.error(
                "webhook_retries_exhausted",
                pending_webhook_id=str(entry.id),
                webhook_type=entry.webhook_type,
                resource_id=entry.resource_id,
                tenant_id=entry.tenant_id,
                error=exhausted.message,
            )
            await self.fail_resource(entry, exhausted.message)
            return True

        entry.status = RETRYING
        step = min(entry.attempt_count, len(BACKOFF_MINUTES) - 1)
        entry.next_retry_at = now + timedelta(minutes=BACKOFF_MINUTES[step])
        logger.warning(
            "webhook_retry_failed",
            pending_webhook_id=str(entry.id),
            webhook_type=entry.webhook_type,
            resource_id=entry.resource_id,
            attempt=entry.attempt_count,
            next_retry_at=entry.next_retry_at.isoformat(),
            error=error,
        )
        return False

    async def fail_resource(self, entry: PendingWebhook, reason: str) -> None:
        """Surface an exhausted dispatch as a failed document or chat exchange."""
        if entry.resource_id is None:
            return
        if entry.webhook_type == Endpoint.DOCUMENT_PROCESSING.value:
            from app.services.documents.registry import DocumentRegistry

            registry = DocumentRegistry(self._db, push=self._push, dispatcher=self._dispatcher)
            await registry.mark_failed(entry.resource_id, reason)
        elif entry.webhook_type == Endpoint.PROCESS_CHAT_MESSAGE.value:
            from app.services.chat.service import ChatService

            chat = ChatService(self._db, push=self._push, dispatcher=self._dispatcher)
            await chat.mark_failed(entry.resource_id, reason)
