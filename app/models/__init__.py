"""SQLAlchemy ORM models.

Individual models should be imported explicitly:
    from app.models.document import Document

All models are imported here so Alembic can detect them during migration
autogenerate.
"""

from app.models.chat_exchange import ChatExchange
from app.models.document import Document
from app.models.observability import VectorSearchLog, WebhookTraffic
from app.models.pending_webhook import PendingWebhook
from app.models.tenant import Tenant
from app.models.tenant_token import TenantToken

__all__ = [
    "Tenant",
    "TenantToken",
    "Document",
    "PendingWebhook",
    "ChatExchange",
    "VectorSearchLog",
    "WebhookTraffic",
]
