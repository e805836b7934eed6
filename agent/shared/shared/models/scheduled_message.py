"""Scheduled message picked up by the poll loop when due."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Index, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from shared.models.base import Base

# scheduled -> sending -> {sent, failed}; cancelled is set only by an operator
STATUS_SCHEDULED = "scheduled"
STATUS_SENDING = "sending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

TERMINAL_STATUSES = (STATUS_SENT, STATUS_FAILED, STATUS_CANCELLED)


class ScheduledMessage(Base):
    __tablename__ = "scheduled_messages"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("workspaces.id", ondelete="CASCADE"))
    template_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("message_templates.id", ondelete="SET NULL"), default=None
    )
    name: Mapped[str] = mapped_column(String(200))

    # Already materialized text; the poll loop does not re-render templates
    content: Mapped[str] = mapped_column(Text)
    blocks: Mapped[list | None] = mapped_column(JSON, default=None)
    recipients: Mapped[list] = mapped_column(JSON)  # list[Recipient]
    sender: Mapped[dict] = mapped_column(JSON)  # Sender
    recurrence: Mapped[dict | None] = mapped_column(JSON, default=None)  # Recurrence
    hubspot_context: Mapped[dict | None] = mapped_column(JSON, default=None)

    status: Mapped[str] = mapped_column(String(16), default=STATUS_SCHEDULED)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_run: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    next_run: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    error_message: Mapped[str | None] = mapped_column(Text, default=None)

    created_by: Mapped[str] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_scheduled_messages_status_scheduled_at", "status", "scheduled_at"),
    )
