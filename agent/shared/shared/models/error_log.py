"""Error log model for failures in background dispatch work."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, JSON, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from shared.models.base import Base


class ErrorLog(Base):
    __tablename__ = "error_logs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    service: Mapped[str] = mapped_column(String)      # "scheduler", "dispatcher", "rules"
    error_type: Mapped[str] = mapped_column(String)   # "message_failed", "rule_action", "poll_cycle"

    operation: Mapped[str | None] = mapped_column(String, default=None)
    context: Mapped[dict | None] = mapped_column(JSON, default=None)
    error_message: Mapped[str] = mapped_column(Text)
    stack_trace: Mapped[str | None] = mapped_column(Text, default=None)

    workspace_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, default=None)
    scheduled_message_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, default=None)
    rule_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, default=None)

    status: Mapped[str] = mapped_column(String, default="open")  # "open" | "dismissed" | "resolved"

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
