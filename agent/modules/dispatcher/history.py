"""Append-only audit trail of dispatch attempts."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog

from modules.dispatcher.dispatcher import DispatchResult
from shared.models.message_history import MessageHistory
from shared.schemas.messaging import Recipient, Sender
from shared.store import DispatchStore

logger = structlog.get_logger()


class HistoryRecorder:
    """Writes one MessageHistory row per (send attempt, recipient).

    Failures are recorded with the same shape as successes. Errors writing
    the row propagate to the caller.
    """

    def __init__(self, store: DispatchStore) -> None:
        self.store = store

    async def record(
        self,
        *,
        workspace_id: uuid.UUID,
        result: DispatchResult,
        recipient: Recipient,
        sender: Sender,
        content: str,
        blocks: list[dict] | None,
        actor: str,
        scheduled_message_id: uuid.UUID | None = None,
        template_id: uuid.UUID | None = None,
        rule_id: uuid.UUID | None = None,
    ) -> MessageHistory:
        entry = MessageHistory(
            id=uuid.uuid4(),
            workspace_id=workspace_id,
            scheduled_message_id=scheduled_message_id,
            template_id=template_id,
            rule_id=rule_id,
            content=content,
            blocks=blocks,
            recipient=recipient.model_dump(),
            channel=result.channel,
            sender=sender.model_dump(),
            status="sent" if result.success else "failed",
            provider_response=result.provider_response,
            error_message=result.error_message,
            sent_by=actor,
            sent_at=datetime.now(timezone.utc),
        )
        await self.store.append_history(entry)
        logger.debug(
            "history_recorded",
            workspace_id=str(workspace_id),
            channel=result.channel,
            status=entry.status,
        )
        return entry
