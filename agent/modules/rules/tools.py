"""Rule operations exposed by the rules service."""

from __future__ import annotations

import uuid

import structlog
from pydantic import ValidationError

from modules.dispatcher.pipeline import DeliveryPipeline
from modules.rules.actions import ActionRunner
from modules.rules.conditions import CustomHandler
from modules.rules.engine import RuleEngine
from shared.config import Settings
from shared.credential_store import WorkspaceCredentialStore
from shared.errors import InvalidArgument, NoCredentialAvailable, NotFound
from shared.hubspot import HubSpotClient
from shared.schemas.rules import (
    EvaluateRuleRequest,
    EvaluationContext,
    HubSpotSearchRequest,
    MetricCondition,
    PropertyCondition,
    RuleDefinition,
    RuleEvaluation,
)
from shared.store import DispatchStore

logger = structlog.get_logger()


def referenced_properties(rule: RuleDefinition) -> list[str]:
    """CRM properties the rule's conditions read, in first-use order."""
    names: dict[str, None] = {}
    for condition in rule.conditions:
        if isinstance(condition, PropertyCondition):
            names.setdefault(condition.property, None)
        elif isinstance(condition, MetricCondition):
            for prop in condition.calculation.properties:
                names.setdefault(prop, None)
    return list(names)


class RulesTools:
    def __init__(
        self,
        store: DispatchStore,
        credential_store: WorkspaceCredentialStore,
        pipeline: DeliveryPipeline,
        settings: Settings,
        custom_handlers: dict[str, CustomHandler] | None = None,
    ):
        self.store = store
        self.credential_store = credential_store
        self.pipeline = pipeline
        self.settings = settings
        self.custom_handlers = custom_handlers or {}

    async def hubspot_client(self, connection_id: uuid.UUID) -> HubSpotClient:
        connection = await self.store.get_hubspot_connection(connection_id)
        if connection is None or not connection.is_active:
            raise NotFound(f"HubSpot connection {connection_id} not found")
        if not connection.encrypted_access_token:
            raise NoCredentialAvailable("No access token available")
        return HubSpotClient(
            self.credential_store.decrypt_secret(connection.encrypted_access_token),
            base_url=self.settings.hubspot_api_url,
            timeout=self.settings.hubspot_timeout_seconds,
        )

    async def get_hubspot_contact(
        self,
        connection_id: uuid.UUID,
        contact_id: str | None = None,
        email: str | None = None,
    ) -> dict:
        client = await self.hubspot_client(connection_id)
        if not contact_id and not email:
            raise InvalidArgument("Either contact_id or email must be provided")
        return await client.get_contact(contact_id=contact_id, email=email)

    async def search_hubspot(self, request: HubSpotSearchRequest) -> list[dict]:
        """All CRM objects of ``request.object_type`` matching every filter."""
        client = await self.hubspot_client(request.connection_id)
        filters = [f.model_dump(by_alias=True, exclude_none=True) for f in request.filters]
        results = await client.search_objects(request.object_type, filters, request.properties)
        logger.info(
            "hubspot_search",
            object_type=request.object_type,
            filters=len(filters),
            results=len(results),
        )
        return results

    async def _load_rule(self, rule_id: uuid.UUID) -> RuleDefinition:
        rule = await self.store.get_rule(rule_id)
        if rule is None:
            raise NotFound(f"Rule {rule_id} not found")
        try:
            return RuleDefinition.model_validate(rule)
        except ValidationError as e:
            raise InvalidArgument(f"Rule {rule_id} is invalid: {e}") from e

    async def _context(
        self,
        rule: RuleDefinition,
        request: EvaluateRuleRequest,
        hubspot: HubSpotClient | None,
    ) -> EvaluationContext:
        needs_crm = any(
            isinstance(c, (PropertyCondition, MetricCondition)) for c in rule.conditions
        )
        if not needs_crm and not (request.object_id or request.email):
            return EvaluationContext(object_type=request.object_type)
        if hubspot is None:
            raise InvalidArgument("connection_id is required to evaluate CRM conditions")
        record = await hubspot.get_object(
            request.object_type,
            object_id=request.object_id,
            email=request.email,
            properties=referenced_properties(rule) or None,
        )
        return EvaluationContext(
            object_type=request.object_type,
            object_id=str(record.get("id")) if record.get("id") is not None else request.object_id,
            properties=record.get("properties") or {},
        )

    def _engine(self, hubspot: HubSpotClient | None) -> RuleEngine:
        runner = ActionRunner(
            self.store,
            self.pipeline,
            hubspot=hubspot,
            webhook_timeout=self.settings.webhook_timeout_seconds,
        )
        return RuleEngine(runner, self.custom_handlers, self.settings.default_timezone)

    async def evaluate_rule(
        self,
        rule_id: uuid.UUID,
        request: EvaluateRuleRequest,
    ) -> RuleEvaluation:
        """Fetch the CRM object, evaluate the rule and run its actions if it fires."""
        rule = await self._load_rule(rule_id)
        hubspot = await self.hubspot_client(request.connection_id) if request.connection_id else None
        context = await self._context(rule, request, hubspot)
        evaluation = await self._engine(hubspot).evaluate(rule, context, dry_run=request.dry_run)
        logger.info(
            "rule_evaluated",
            rule_id=str(rule_id),
            fired=evaluation.fired,
            dry_run=request.dry_run,
        )
        return evaluation

    async def evaluate_workspace(
        self,
        workspace_id: uuid.UUID,
        request: EvaluateRuleRequest,
    ) -> list[RuleEvaluation]:
        """Evaluate every active rule of a workspace against one CRM object.

        A rule that cannot be evaluated is reported with ``error`` set and
        does not stop the others.
        """
        rows = await self.store.list_active_rules(workspace_id)
        hubspot = await self.hubspot_client(request.connection_id) if request.connection_id else None
        engine = self._engine(hubspot)
        evaluations = []
        for row in rows:
            try:
                rule = RuleDefinition.model_validate(row)
                context = await self._context(rule, request, hubspot)
                evaluations.append(await engine.evaluate(rule, context, dry_run=request.dry_run))
            except Exception as e:
                logger.error("rule_evaluation_failed", rule_id=str(row.id), error=str(e))
                evaluations.append(RuleEvaluation(rule_id=row.id, fired=False, error=str(e)))
        return evaluations

    async def set_rule_active(self, rule_id: uuid.UUID, is_active: bool) -> dict:
        await self._load_rule(rule_id)
        await self.store.update_rule(rule_id, is_active=is_active)
        logger.info("rule_active_changed", rule_id=str(rule_id), is_active=is_active)
        return {"rule_id": str(rule_id), "is_active": is_active}

    def register_handler(self, name: str, handler: CustomHandler) -> None:
        """Register a handler for ``custom`` conditions named ``name``."""
        self.custom_handlers[name] = handler
