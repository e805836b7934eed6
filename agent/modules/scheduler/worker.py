"""Scheduler poll cycle: pick up due messages and drive the delivery pipeline."""

from __future__ import annotations

import asyncio
import traceback
from datetime import datetime, timezone

import structlog
from pydantic import TypeAdapter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from modules.dispatcher.pipeline import DeliveryPipeline
from shared.config import Settings
from shared.error_capture import capture_error
from shared.models.scheduled_message import STATUS_FAILED, STATUS_SENT, ScheduledMessage
from shared.schemas.messaging import CycleReport, MessageCycleOutcome, Recipient, Sender
from shared.store import DispatchStore

logger = structlog.get_logger()

# Upper bound on messages picked up per cycle
DEFAULT_BATCH_SIZE = 50

_recipients_adapter = TypeAdapter(list[Recipient])
_sender_adapter = TypeAdapter(Sender)


async def scheduler_loop(
    store: DispatchStore,
    pipeline: DeliveryPipeline,
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> None:
    """Background loop that runs one poll cycle per interval."""
    logger.info("scheduler_worker_started", interval=settings.poll_interval_seconds)
    while True:
        try:
            await run_poll_cycle(
                datetime.now(timezone.utc),
                store,
                pipeline,
                batch_size=settings.poll_batch_size,
                session_factory=session_factory,
            )
        except Exception as e:
            logger.error("scheduler_loop_error", error=str(e))

        await asyncio.sleep(settings.poll_interval_seconds)


async def run_poll_cycle(
    now: datetime,
    store: DispatchStore,
    pipeline: DeliveryPipeline,
    batch_size: int = DEFAULT_BATCH_SIZE,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> CycleReport:
    """Process every message due at ``now``, at most ``batch_size`` of them.

    Messages are handled concurrently and independently. A message that
    another cycle already claimed (or that was cancelled) is skipped.
    """
    report = CycleReport(started_at=now)
    due = list(await store.fetch_due_messages(now, batch_size))
    report.due = len(due)
    if not due:
        return report

    logger.info("poll_cycle_started", due=len(due), batch_size=batch_size)

    outcomes = await asyncio.gather(
        *(_process_message(m, now, store, pipeline, session_factory) for m in due),
        return_exceptions=True,
    )

    for message, outcome in zip(due, outcomes):
        if isinstance(outcome, BaseException):
            # Only reachable if marking the message failed itself failed
            logger.error("message_processing_crashed", message_id=str(message.id), error=str(outcome))
            outcome = MessageCycleOutcome(message_id=message.id, status="failed", error=str(outcome))
        report.outcomes.append(outcome)
        if outcome.status == "skipped":
            report.skipped += 1
            continue
        report.claimed += 1
        if outcome.status == "sent":
            report.sent += 1
        else:
            report.failed += 1

    logger.info(
        "poll_cycle_complete",
        due=report.due,
        sent=report.sent,
        failed=report.failed,
        skipped=report.skipped,
    )
    return report


async def _process_message(
    message: ScheduledMessage,
    now: datetime,
    store: DispatchStore,
    pipeline: DeliveryPipeline,
    session_factory: async_sessionmaker[AsyncSession] | None,
) -> MessageCycleOutcome:
    if not await store.claim_message(message.id):
        logger.info("message_already_claimed", message_id=str(message.id))
        return MessageCycleOutcome(message_id=message.id, status="skipped")

    logger.info("message_claimed", message_id=str(message.id), workspace_id=str(message.workspace_id))

    try:
        sender = _sender_adapter.validate_python(message.sender)
        recipients = _recipients_adapter.validate_python(message.recipients)
        credential = await pipeline.prepare(message.workspace_id, sender)

        results = await pipeline.deliver(
            credential,
            workspace_id=message.workspace_id,
            content=message.content,
            recipients=recipients,
            sender=sender,
            actor="scheduler",
            blocks=message.blocks,
            scheduled_message_id=message.id,
            template_id=message.template_id,
        )

        fields: dict = {"status": STATUS_SENT, "error_message": None}
        if message.recurrence:
            fields["last_run"] = now
        await store.update_message(message.id, **fields)
    except Exception as e:
        await _mark_failed(message, e, store, session_factory)
        return MessageCycleOutcome(message_id=message.id, status="failed", error=str(e))

    failed = sum(1 for r in results if not r.success)
    logger.info(
        "message_sent",
        message_id=str(message.id),
        recipients=len(results),
        failed_recipients=failed,
    )
    return MessageCycleOutcome(
        message_id=message.id,
        status="sent",
        recipients_attempted=len(results),
        recipients_failed=failed,
    )


async def _mark_failed(
    message: ScheduledMessage,
    error: Exception,
    store: DispatchStore,
    session_factory: async_sessionmaker[AsyncSession] | None,
) -> None:
    logger.warning("message_failed", message_id=str(message.id), error=str(error))
    await store.update_message(message.id, status=STATUS_FAILED, error_message=str(error))
    if session_factory is not None:
        await capture_error(
            session_factory,
            service="scheduler",
            error_type="message_failed",
            error_message=str(error),
            operation="run_poll_cycle",
            context={"recipients": len(message.recipients or [])},
            stack_trace=traceback.format_exc(),
            workspace_id=message.workspace_id,
            scheduled_message_id=message.id,
        )
