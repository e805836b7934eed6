"""Dispatcher service - ad-hoc sends and Slack directory listing."""

from __future__ import annotations

import uuid

import structlog
from fastapi import Depends, FastAPI, Header
from fastapi.responses import JSONResponse

from comms.slack_bot.client import SlackDeliveryClient
from modules.dispatcher.pipeline import DeliveryPipeline
from modules.dispatcher.templates import TemplateTools
from shared.auth import require_service_auth
from shared.config import get_settings
from shared.credential_store import WorkspaceCredentialStore
from shared.database import dispose_engine, get_session_factory
from shared.http_errors import register_error_handlers
from shared.schemas.common import HealthResponse
from shared.schemas.messaging import (
    BotSender,
    CreateTemplateRequest,
    PreviewTemplateRequest,
    SendRequest,
    SendResponse,
    SlackChannel,
    SlackUser,
    TemplateOut,
    TemplatePreview,
)
from shared.store import SqlDispatchStore

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()
app = FastAPI(title="Dispatcher Service", version="1.0.0")
register_error_handlers(app)

pipeline: DeliveryPipeline | None = None
slack: SlackDeliveryClient | None = None
templates: TemplateTools | None = None


@app.on_event("startup")
async def startup():
    global pipeline, slack, templates
    settings = get_settings()
    store = SqlDispatchStore(get_session_factory())
    slack = SlackDeliveryClient(timeout=settings.slack_api_timeout_seconds)
    templates = TemplateTools(store)
    pipeline = DeliveryPipeline(
        store,
        WorkspaceCredentialStore(settings.credential_encryption_key),
        slack,
        session_factory=get_session_factory(),
    )
    logger.info("dispatcher_service_ready")


@app.on_event("shutdown")
async def shutdown():
    await dispose_engine()
    logger.info("dispatcher_service_shutdown")


def _not_ready() -> JSONResponse:
    return JSONResponse(status_code=503, content={"error": "unavailable", "detail": "Service not ready"})


@app.post("/send", response_model=SendResponse)
async def send(
    request: SendRequest,
    x_actor: str = Header("api", alias="X-Actor"),
    _=Depends(require_service_auth),
):
    """Send to every recipient; per-recipient failures are reported, not raised."""
    if pipeline is None:
        return _not_ready()
    logger.info(
        "send_requested",
        workspace_id=str(request.workspace_id),
        recipients=len(request.recipients),
        actor=x_actor,
    )
    return await pipeline.send(request, actor=x_actor)


@app.get("/workspaces/{workspace_id}/channels", response_model=list[SlackChannel])
async def list_channels(workspace_id: uuid.UUID, _=Depends(require_service_auth)):
    if pipeline is None or slack is None:
        return _not_ready()
    credential = await pipeline.prepare(workspace_id, BotSender())
    return await slack.list_channels(credential)


@app.get("/workspaces/{workspace_id}/users", response_model=list[SlackUser])
async def list_users(workspace_id: uuid.UUID, _=Depends(require_service_auth)):
    if pipeline is None or slack is None:
        return _not_ready()
    credential = await pipeline.prepare(workspace_id, BotSender())
    return await slack.list_users(credential)


@app.post("/templates", response_model=TemplateOut, status_code=201)
async def create_template(request: CreateTemplateRequest, _=Depends(require_service_auth)):
    if templates is None:
        return _not_ready()
    return await templates.create_template(request)


@app.post("/templates/{template_id}/preview", response_model=TemplatePreview)
async def preview_template(
    template_id: uuid.UUID,
    request: PreviewTemplateRequest,
    _=Depends(require_service_auth),
):
    if templates is None:
        return _not_ready()
    return await templates.preview_template(template_id, request)


@app.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(status="ok")
