"""Message template creation and preview."""

from __future__ import annotations

import uuid
from dataclasses import asdict
from datetime import datetime, timezone

import structlog

from shared.errors import NotFound
from shared.models.message_template import MessageTemplate
from shared.schemas.messaging import (
    CreateTemplateRequest,
    PreviewTemplateRequest,
    TemplatePreview,
)
from shared.store import DispatchStore
from shared.templates import (
    extract_variables,
    hubspot_variables,
    object_variables,
    render_template,
    validate_variables,
)

logger = structlog.get_logger()


class TemplateTools:
    def __init__(self, store: DispatchStore):
        self.store = store

    async def create_template(self, request: CreateTemplateRequest) -> MessageTemplate:
        """Store a template along with the variables its content references."""
        if await self.store.get_workspace(request.workspace_id) is None:
            raise NotFound(f"Workspace {request.workspace_id} not found")

        names = extract_variables(request.content)
        known = hubspot_variables(names)
        now = datetime.now(timezone.utc)
        template = MessageTemplate(
            id=uuid.uuid4(),
            workspace_id=request.workspace_id,
            name=request.name,
            description=request.description,
            content=request.content,
            blocks=[b.model_dump() for b in request.blocks] if request.blocks else None,
            variables=names,
            hubspot_variables=[asdict(v) for v in known],
            category=request.category,
            tags=list(request.tags),
            is_active=True,
            created_by=request.created_by,
            created_at=now,
            updated_at=now,
        )
        template = await self.store.add_template(template)
        logger.info(
            "template_created",
            template_id=str(template.id),
            variables=len(names),
            hubspot_variables=len(known),
        )
        return template

    async def preview_template(
        self, template_id: uuid.UUID, request: PreviewTemplateRequest
    ) -> TemplatePreview:
        """Render a template and report the placeholders left unresolved."""
        template = await self.store.get_template(template_id)
        if template is None:
            raise NotFound(f"Template {template_id} not found")

        values: dict = {}
        if request.properties:
            values.update(object_variables(request.object_type, request.properties))
        values.update(request.variables)
        if request.use_examples:
            # Examples only fill what the supplied values leave unresolved
            missing = set(validate_variables(template.content, values))
            for var in hubspot_variables(extract_variables(template.content)):
                if var.name in missing:
                    values[var.name] = var.example

        return TemplatePreview(
            template_id=template.id,
            content=render_template(template.content, values),
            missing=validate_variables(template.content, values),
        )
