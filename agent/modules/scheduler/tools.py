"""Scheduled-message management: schedule, list, cancel, re-arm."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog
from pydantic import ValidationError

from modules.scheduler.recurrence import calculate_next_run
from shared.config import Settings
from shared.errors import InvalidArgument, NotFound
from shared.models.scheduled_message import (
    STATUS_CANCELLED,
    STATUS_SCHEDULED,
    STATUS_SENT,
    ScheduledMessage,
)
from shared.schemas.messaging import Recurrence, ScheduleMessageRequest
from shared.store import DispatchStore

logger = structlog.get_logger()


class SchedulerTools:
    """Operator-facing operations on scheduled messages."""

    def __init__(self, store: DispatchStore, settings: Settings):
        self.store = store
        self.settings = settings

    async def schedule_message(self, request: ScheduleMessageRequest) -> ScheduledMessage:
        """Create a message in ``scheduled`` status."""
        if await self.store.get_workspace(request.workspace_id) is None:
            raise NotFound(f"Workspace {request.workspace_id} not found")

        scheduled_at = request.scheduled_at
        if scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)

        now = datetime.now(timezone.utc)
        message = ScheduledMessage(
            id=uuid.uuid4(),
            workspace_id=request.workspace_id,
            template_id=request.template_id,
            name=request.name,
            content=request.content,
            blocks=[b.model_dump() for b in request.blocks] if request.blocks else None,
            recipients=[r.model_dump() for r in request.recipients],
            sender=request.sender.model_dump(),
            recurrence=request.recurrence.model_dump(mode="json") if request.recurrence else None,
            status=STATUS_SCHEDULED,
            scheduled_at=scheduled_at,
            next_run=scheduled_at,
            created_by=request.created_by,
            created_at=now,
            updated_at=now,
        )
        message = await self.store.add_message(message)
        logger.info(
            "message_scheduled",
            message_id=str(message.id),
            workspace_id=str(message.workspace_id),
            scheduled_at=scheduled_at.isoformat(),
            recurring=request.recurrence is not None,
        )
        return message

    async def list_messages(
        self,
        workspace_id: uuid.UUID | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[ScheduledMessage]:
        return list(await self.store.list_messages(workspace_id, status, limit))

    async def cancel_message(self, message_id: uuid.UUID) -> dict:
        """Cancel a message that has not been picked up yet.

        Once a cycle has moved the message to ``sending`` this is a no-op
        and the current status is reported back.
        """
        message = await self.store.get_message(message_id)
        if message is None:
            raise NotFound(f"Scheduled message {message_id} not found")

        cancelled = await self.store.transition_message(
            message_id, STATUS_SCHEDULED, status=STATUS_CANCELLED
        )
        if not cancelled:
            current = await self.store.get_message(message_id)
            status = current.status if current else message.status
            logger.info("message_cancel_ignored", message_id=str(message_id), status=status)
            return {"message_id": str(message_id), "cancelled": False, "status": status}

        logger.info("message_cancelled", message_id=str(message_id))
        return {"message_id": str(message_id), "cancelled": True, "status": STATUS_CANCELLED}

    async def rearm_recurring(self, message_id: uuid.UUID) -> dict:
        """Put a sent recurring message back in the queue at its next occurrence."""
        message = await self.store.get_message(message_id)
        if message is None:
            raise NotFound(f"Scheduled message {message_id} not found")
        if not message.recurrence:
            raise InvalidArgument(f"Scheduled message {message_id} is not recurring")
        if message.status != STATUS_SENT:
            raise InvalidArgument(
                f"Only sent messages can be re-armed (status is {message.status})"
            )

        try:
            recurrence = Recurrence.model_validate(message.recurrence)
        except ValidationError as e:
            raise InvalidArgument(f"Scheduled message {message_id} has an invalid recurrence: {e}") from e
        last_run = message.last_run or message.scheduled_at
        next_run = calculate_next_run(recurrence, last_run, self.settings.default_timezone)
        if next_run is None:
            logger.info("message_series_ended", message_id=str(message_id))
            return {"message_id": str(message_id), "rearmed": False, "next_run": None}

        rearmed = await self.store.transition_message(
            message_id,
            STATUS_SENT,
            status=STATUS_SCHEDULED,
            scheduled_at=next_run,
            next_run=next_run,
            error_message=None,
        )
        logger.info(
            "message_rearmed" if rearmed else "message_rearm_conflict",
            message_id=str(message_id),
            next_run=next_run.isoformat(),
        )
        return {
            "message_id": str(message_id),
            "rearmed": rearmed,
            "next_run": next_run.isoformat() if rearmed else None,
        }
