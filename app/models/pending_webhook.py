"""Retry queue entry ORM model: one failed outbound dispatch."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Index, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.postgres import Base


class PendingWebhook(Base):
    __tablename__ = "pending_webhooks"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    webhook_type: Mapped[str] = mapped_column(
        Text, nullable=False
    )  # 'document-processing' | 'process-chat-message'
    resource_id: Mapped[str | None] = mapped_column(
        Text, nullable=True
    )  # document id or chat message id the dispatch was for
    target_url: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
    auth_scheme: Mapped[str] = mapped_column(Text, nullable=False, default="bearer")
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_retry_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default="pending"
    )  # 'pending' | 'retrying' | 'succeeded' | 'failed'
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_pending_webhooks_due", "status", "next_retry_at"),
        Index("ix_pending_webhooks_resource", "webhook_type", "resource_id"),
    )
