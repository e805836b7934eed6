"""Tests for the HubSpot CRM client. All external HTTP calls are mocked."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from shared.errors import InvalidArgument, NotFound
from shared.hubspot import HubSpotClient, HubSpotError


def _response(status_code: int = 200, payload: dict | None = None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload or {}
    resp.text = str(payload)
    return resp


def _mock_client(*responses):
    mock_client = AsyncMock()
    mock_client.request.side_effect = list(responses)
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    return mock_client


# ---------------------------------------------------------------------------
# get_object
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_get_object_by_id():
    with patch("shared.hubspot.httpx.AsyncClient") as mock_client_cls:
        mock_client = _mock_client(_response(200, {"id": "1", "properties": {"amount": "5"}}))
        mock_client_cls.return_value = mock_client

        record = await HubSpotClient("pat").get_object("deals", "1", properties=["amount", "dealname"])

    assert record["properties"]["amount"] == "5"
    args, kwargs = mock_client.request.call_args
    assert args == ("GET", "/crm/v3/objects/deals/1")
    assert kwargs["params"] == {"properties": "amount,dealname"}
    assert mock_client_cls.call_args.kwargs["headers"]["Authorization"] == "Bearer pat"


@pytest.mark.asyncio
async def test_get_contact_by_email():
    with patch("shared.hubspot.httpx.AsyncClient") as mock_client_cls:
        mock_client = _mock_client(_response(200, {"id": "7"}))
        mock_client_cls.return_value = mock_client

        await HubSpotClient("pat").get_contact(email="ana@acme.test")

    args, kwargs = mock_client.request.call_args
    assert args == ("GET", "/crm/v3/objects/contacts/ana@acme.test")
    assert kwargs["params"] == {"idProperty": "email"}


@pytest.mark.asyncio
async def test_get_object_requires_identifier():
    with pytest.raises(InvalidArgument):
        await HubSpotClient("pat").get_object("contacts")


@pytest.mark.asyncio
async def test_not_found():
    with patch("shared.hubspot.httpx.AsyncClient") as mock_client_cls:
        mock_client_cls.return_value = _mock_client(_response(404))
        with pytest.raises(NotFound):
            await HubSpotClient("pat").get_object("contacts", "404")


@pytest.mark.asyncio
async def test_server_error():
    with patch("shared.hubspot.httpx.AsyncClient") as mock_client_cls:
        mock_client_cls.return_value = _mock_client(_response(500, {"message": "boom"}))
        with pytest.raises(HubSpotError):
            await HubSpotClient("pat").get_object("contacts", "1")


# ---------------------------------------------------------------------------
# search_objects / update_object
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_search_follows_paging():
    page1 = _response(200, {"results": [{"id": "1"}, {"id": "2"}], "paging": {"next": {"after": "2"}}})
    page2 = _response(200, {"results": [{"id": "3"}]})
    with patch("shared.hubspot.httpx.AsyncClient") as mock_client_cls:
        mock_client = _mock_client(page1, page2)
        mock_client_cls.return_value = mock_client

        results = await HubSpotClient("pat").search_objects(
            "deals",
            [{"propertyName": "dealstage", "operator": "EQ", "value": "closedwon"}],
            ["amount"],
        )

    assert [r["id"] for r in results] == ["1", "2", "3"]
    first_body = mock_client.request.call_args_list[0].kwargs["json"]
    second_body = mock_client.request.call_args_list[1].kwargs["json"]
    assert first_body["limit"] == 100
    assert "after" not in first_body
    assert second_body["after"] == "2"


@pytest.mark.asyncio
async def test_update_object_no_content():
    with patch("shared.hubspot.httpx.AsyncClient") as mock_client_cls:
        mock_client = _mock_client(_response(204))
        mock_client_cls.return_value = mock_client

        result = await HubSpotClient("pat").update_object("contacts", "1", {"hs_lead_status": "HOT"})

    assert result == {}
    args, kwargs = mock_client.request.call_args
    assert args == ("PATCH", "/crm/v3/objects/contacts/1")
    assert kwargs["json"] == {"properties": {"hs_lead_status": "HOT"}}
