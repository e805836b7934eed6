"""Immutable audit record: one row per (send attempt, recipient)."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Index, JSON, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from shared.models.base import Base


class MessageHistory(Base):
    __tablename__ = "message_history"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    # Plain ids rather than foreign keys so audit rows outlive what they reference
    workspace_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    scheduled_message_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, default=None)
    template_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, default=None)
    rule_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, default=None)

    content: Mapped[str] = mapped_column(Text)
    blocks: Mapped[list | None] = mapped_column(JSON, default=None)
    recipient: Mapped[dict] = mapped_column(JSON)
    channel: Mapped[str] = mapped_column(String(200))
    sender: Mapped[dict] = mapped_column(JSON)

    status: Mapped[str] = mapped_column(String(16))  # sent | failed
    provider_response: Mapped[dict | None] = mapped_column(JSON, default=None)
    error_message: Mapped[str | None] = mapped_column(Text, default=None)

    sent_by: Mapped[str] = mapped_column(String(128))
    sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_message_history_workspace_sent_at", "workspace_id", "sent_at"),
    )
