"""Rules service - rule evaluation and HubSpot contact lookup."""

from __future__ import annotations

import uuid

import structlog
from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse

from comms.slack_bot.client import SlackDeliveryClient
from modules.dispatcher.pipeline import DeliveryPipeline
from modules.rules.tools import RulesTools
from shared.auth import require_service_auth
from shared.config import get_settings
from shared.credential_store import WorkspaceCredentialStore
from shared.database import dispose_engine, get_session_factory
from shared.http_errors import register_error_handlers
from shared.schemas.common import HealthResponse
from shared.schemas.rules import (
    EvaluateRuleRequest,
    HubSpotSearchRequest,
    RuleEvaluation,
    SetRuleActiveRequest,
)
from shared.store import SqlDispatchStore

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()
app = FastAPI(title="Rules Service", version="1.0.0")
register_error_handlers(app)

tools: RulesTools | None = None


@app.on_event("startup")
async def startup():
    global tools
    settings = get_settings()
    store = SqlDispatchStore(get_session_factory())
    credential_store = WorkspaceCredentialStore(settings.credential_encryption_key)
    pipeline = DeliveryPipeline(
        store,
        credential_store,
        SlackDeliveryClient(timeout=settings.slack_api_timeout_seconds),
        session_factory=get_session_factory(),
    )
    tools = RulesTools(store, credential_store, pipeline, settings)
    logger.info("rules_service_ready")


@app.on_event("shutdown")
async def shutdown():
    await dispose_engine()
    logger.info("rules_service_shutdown")


def _not_ready() -> JSONResponse:
    return JSONResponse(status_code=503, content={"error": "unavailable", "detail": "Service not ready"})


@app.post("/rules/{rule_id}/evaluate", response_model=RuleEvaluation)
async def evaluate_rule(
    rule_id: uuid.UUID,
    request: EvaluateRuleRequest,
    _=Depends(require_service_auth),
):
    if tools is None:
        return _not_ready()
    return await tools.evaluate_rule(rule_id, request)


@app.post("/workspaces/{workspace_id}/evaluate", response_model=list[RuleEvaluation])
async def evaluate_workspace(
    workspace_id: uuid.UUID,
    request: EvaluateRuleRequest,
    _=Depends(require_service_auth),
):
    if tools is None:
        return _not_ready()
    return await tools.evaluate_workspace(workspace_id, request)


@app.post("/rules/{rule_id}/active")
async def set_rule_active(
    rule_id: uuid.UUID,
    request: SetRuleActiveRequest,
    _=Depends(require_service_auth),
):
    if tools is None:
        return _not_ready()
    return await tools.set_rule_active(rule_id, request.is_active)


@app.get("/hubspot/contact")
async def get_hubspot_contact(
    connection_id: uuid.UUID,
    contact_id: str | None = None,
    email: str | None = None,
    _=Depends(require_service_auth),
):
    if tools is None:
        return _not_ready()
    contact = await tools.get_hubspot_contact(connection_id, contact_id, email)
    return {"contact": contact}


@app.post("/hubspot/search")
async def search_hubspot(request: HubSpotSearchRequest, _=Depends(require_service_auth)):
    if tools is None:
        return _not_ready()
    results = await tools.search_hubspot(request)
    return {"results": results, "total": len(results)}


@app.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(status="ok")
