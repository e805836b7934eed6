"""Tests for template creation and preview, and their dispatcher endpoints."""

from __future__ import annotations

import uuid
from unittest.mock import patch

import httpx
import pytest

from modules.dispatcher.templates import TemplateTools
from shared.errors import NotFound
from shared.schemas.messaging import CreateTemplateRequest, PreviewTemplateRequest

CONTENT = "Hi {{contact.firstname}}, {{deal.amount}} is in {{region}}"


@pytest.fixture
def templates(store):
    return TemplateTools(store)


class TestCreateTemplate:
    @pytest.mark.asyncio
    async def test_records_variables(self, templates, store, make_workspace):
        ws = make_workspace()

        template = await templates.create_template(
            CreateTemplateRequest(workspace_id=ws.id, name="Deal update", content=CONTENT)
        )

        assert template.variables == ["contact.firstname", "deal.amount", "region"]
        assert [v["name"] for v in template.hubspot_variables] == ["contact.firstname", "deal.amount"]
        assert template.hubspot_variables[1]["property"] == "amount"
        assert template.is_active is True
        assert store.templates[template.id] is template

    @pytest.mark.asyncio
    async def test_unknown_workspace(self, templates):
        with pytest.raises(NotFound):
            await templates.create_template(
                CreateTemplateRequest(workspace_id=uuid.uuid4(), name="x", content="x")
            )


class TestPreviewTemplate:
    @pytest.mark.asyncio
    async def test_reports_missing_variables(self, templates, make_workspace):
        ws = make_workspace()
        template = await templates.create_template(
            CreateTemplateRequest(workspace_id=ws.id, name="t", content="Hi {{contact.firstname}} from {{region}}")
        )

        preview = await templates.preview_template(
            template.id,
            PreviewTemplateRequest(object_type="contacts", properties={"firstname": "Ana"}),
        )

        assert preview.content == "Hi Ana from {{region}}"
        assert preview.missing == ["region"]

    @pytest.mark.asyncio
    async def test_examples_fill_only_unresolved(self, templates, make_workspace):
        ws = make_workspace()
        template = await templates.create_template(
            CreateTemplateRequest(workspace_id=ws.id, name="t", content=CONTENT)
        )

        preview = await templates.preview_template(
            template.id,
            PreviewTemplateRequest(variables={"contact.firstname": "Ana"}, use_examples=True),
        )

        assert preview.content == "Hi Ana, 50000 is in {{region}}"
        assert preview.missing == ["region"]

    @pytest.mark.asyncio
    async def test_unknown_template(self, templates):
        with pytest.raises(NotFound):
            await templates.preview_template(uuid.uuid4(), PreviewTemplateRequest())


# ---------------------------------------------------------------------------
# HTTP surface
# ---------------------------------------------------------------------------


@pytest.fixture
async def client():
    from modules.dispatcher.main import app

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


class TestTemplateApi:
    @pytest.mark.asyncio
    async def test_create_and_preview(self, client, templates, make_workspace):
        ws = make_workspace()
        with patch("modules.dispatcher.main.templates", templates):
            created = await client.post(
                "/templates",
                json={"workspace_id": str(ws.id), "name": "t", "content": "Hello {{name}}"},
            )
            template_id = created.json()["id"]
            preview = await client.post(
                f"/templates/{template_id}/preview", json={"variables": {"name": "Ana"}}
            )

        assert created.status_code == 201
        assert created.json()["variables"] == ["name"]
        assert preview.status_code == 200
        assert preview.json() == {"template_id": template_id, "content": "Hello Ana", "missing": []}

    @pytest.mark.asyncio
    async def test_not_ready(self, client):
        with patch("modules.dispatcher.main.templates", None):
            resp = await client.post(f"/templates/{uuid.uuid4()}/preview", json={})
        assert resp.status_code == 503

    @pytest.mark.asyncio
    async def test_unknown_template_is_404(self, client, templates):
        with patch("modules.dispatcher.main.templates", templates):
            resp = await client.post(f"/templates/{uuid.uuid4()}/preview", json={})
        assert resp.status_code == 404
