"""Per-tenant callback token ORM model."""

from datetime import datetime, timezone

from sqlalchemy import DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.postgres import Base


class TenantToken(Base):
    __tablename__ = "tenant_tokens"

    # Primary key doubles as the uniqueness guarantee for insert-if-absent.
    tenant_id: Mapped[str] = mapped_column(Text, primary_key=True)
    callback_token: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    rotated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
