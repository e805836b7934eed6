"""Scheduler service - FastAPI app with the background poll loop."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone

import structlog
from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse

from comms.slack_bot.client import SlackDeliveryClient
from modules.dispatcher.pipeline import DeliveryPipeline
from modules.scheduler.tools import SchedulerTools
from modules.scheduler.worker import run_poll_cycle, scheduler_loop
from shared.auth import require_service_auth
from shared.config import get_settings
from shared.credential_store import WorkspaceCredentialStore
from shared.database import dispose_engine, get_session_factory
from shared.http_errors import register_error_handlers
from shared.schemas.common import HealthResponse
from shared.schemas.messaging import CycleReport, ScheduledMessageOut, ScheduleMessageRequest
from shared.store import SqlDispatchStore

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()
app = FastAPI(title="Scheduler Service", version="1.0.0")
register_error_handlers(app)

tools: SchedulerTools | None = None
pipeline: DeliveryPipeline | None = None
_worker_task: asyncio.Task | None = None


@app.on_event("startup")
async def startup():
    global tools, pipeline, _worker_task
    settings = get_settings()
    session_factory = get_session_factory()
    store = SqlDispatchStore(session_factory)
    tools = SchedulerTools(store, settings)
    pipeline = DeliveryPipeline(
        store,
        WorkspaceCredentialStore(settings.credential_encryption_key),
        SlackDeliveryClient(timeout=settings.slack_api_timeout_seconds),
        session_factory=session_factory,
    )

    _worker_task = asyncio.create_task(
        scheduler_loop(store, pipeline, settings, session_factory)
    )
    logger.info("scheduler_service_ready")


@app.on_event("shutdown")
async def shutdown():
    global _worker_task
    if _worker_task and not _worker_task.done():
        _worker_task.cancel()
        try:
            await _worker_task
        except asyncio.CancelledError:
            pass
    await dispose_engine()
    logger.info("scheduler_service_shutdown")


def _not_ready() -> JSONResponse:
    return JSONResponse(status_code=503, content={"error": "unavailable", "detail": "Service not ready"})


@app.post("/messages", response_model=ScheduledMessageOut, status_code=201)
async def schedule_message(request: ScheduleMessageRequest, _=Depends(require_service_auth)):
    if tools is None:
        return _not_ready()
    return await tools.schedule_message(request)


@app.get("/messages", response_model=list[ScheduledMessageOut])
async def list_messages(
    workspace_id: uuid.UUID | None = None,
    status: str | None = None,
    limit: int = 100,
    _=Depends(require_service_auth),
):
    if tools is None:
        return _not_ready()
    return await tools.list_messages(workspace_id, status, limit)


@app.post("/messages/{message_id}/cancel")
async def cancel_message(message_id: uuid.UUID, _=Depends(require_service_auth)):
    if tools is None:
        return _not_ready()
    return await tools.cancel_message(message_id)


@app.post("/messages/{message_id}/rearm")
async def rearm_message(message_id: uuid.UUID, _=Depends(require_service_auth)):
    if tools is None:
        return _not_ready()
    return await tools.rearm_recurring(message_id)


@app.post("/cycle", response_model=CycleReport)
async def run_cycle(_=Depends(require_service_auth)):
    """Run one poll cycle immediately."""
    if tools is None or pipeline is None:
        return _not_ready()
    settings = get_settings()
    return await run_poll_cycle(
        datetime.now(timezone.utc),
        tools.store,
        pipeline,
        batch_size=settings.poll_batch_size,
        session_factory=get_session_factory(),
    )


@app.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(status="ok")
