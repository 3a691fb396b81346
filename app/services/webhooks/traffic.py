"""Inbound callback traffic capture.

Every callback and vector-search request is written to ``webhook_traffic``
after the response has been produced, in its own session. Credentials are
redacted and bodies truncated. A capture failure is logged and dropped;
it never affects the request that triggered it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from fastapi import Request
from sqlalchemy import delete

from app.core.config import settings
from app.db.postgres import session_scope
from app.models.observability import WebhookTraffic
from app.services.webhooks.protocol import SENSITIVE_HEADERS

logger = structlog.get_logger(__name__)

MAX_BODY_CHARS = 10_000
REDACTED = "[REDACTED]"


@dataclass
class TrafficRecord:
    endpoint_category: str
    request_method: str
    request_url: str
    request_headers: dict[str, str] = field(default_factory=dict)
    request_body: str | None = None
    response_status: int = 0
    source_ip: str | None = None
    user_agent: str | None = None


def redact_headers(headers: Any) -> dict[str, str]:
    return {
        key: REDACTED if key.lower() in SENSITIVE_HEADERS else value
        for key, value in dict(headers).items()
    }


def truncate_body(body: bytes | str | None) -> str | None:
    if body is None:
        return None
    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
    if len(text) > MAX_BODY_CHARS:
        return text[:MAX_BODY_CHARS] + "...[truncated]"
    return text


async def capture_request(request: Request, category: str, response_status: int) -> TrafficRecord:
    """Snapshot what the traffic log needs while the request is still readable."""
    body = await request.body()
    return TrafficRecord(
        endpoint_category=category,
        request_method=request.method,
        request_url=str(request.url),
        request_headers=redact_headers(request.headers),
        request_body=truncate_body(body),
        response_status=response_status,
        source_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


async def record_webhook_traffic(record: TrafficRecord, session_factory=session_scope) -> None:
    """Background task: persist one captured request."""
    try:
        async with session_factory() as db:
            db.add(
                WebhookTraffic(
                    endpoint_category=record.endpoint_category,
                    request_method=record.request_method,
                    request_url=record.request_url,
                    request_headers=record.request_headers,
                    request_body=record.request_body,
                    response_status=record.response_status,
                    source_ip=record.source_ip,
                    user_agent=record.user_agent,
                    captured_at=datetime.now(timezone.utc),
                )
            )
    except Exception as e:
        logger.warning(
            "webhook_traffic_capture_failed",
            endpoint_category=record.endpoint_category,
            error=str(e),
        )


async def prune_webhook_traffic(db, retention_days: int | None = None) -> int:
    """Delete captured traffic older than the retention window."""
    days = retention_days if retention_days is not None else settings.webhook_traffic_retention_days
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    result = await db.execute(delete(WebhookTraffic).where(WebhookTraffic.captured_at < cutoff))
    removed = result.rowcount or 0
    logger.info("webhook_traffic_pruned", removed=removed, retention_days=days)
    return removed
