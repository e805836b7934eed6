"""HubSpot CRM v3 client used for rule evaluation and contact lookup."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from shared.errors import DispatchEngineError, InvalidArgument, NotFound

logger = structlog.get_logger()

_DEFAULT_BASE = "https://api.hubapi.com"

# Maximum page size accepted by the CRM search endpoint
SEARCH_PAGE_SIZE = 100


class HubSpotError(DispatchEngineError):
    """HubSpot returned an unexpected error status."""

    code = "hubspot-error"
    status_code = 502


class HubSpotClient:
    """Thin async wrapper over the CRM objects API."""

    def __init__(
        self,
        access_token: str,
        base_url: str = _DEFAULT_BASE,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        async with httpx.AsyncClient(
            base_url=self.base_url, headers=self._headers, timeout=self.timeout
        ) as client:
            resp = await client.request(method, path, **kwargs)
        if resp.status_code == 404:
            raise NotFound(f"HubSpot object not found: {path}")
        if resp.status_code >= 400:
            logger.warning("hubspot_request_failed", path=path, status=resp.status_code)
            raise HubSpotError(f"HubSpot API error {resp.status_code}: {resp.text[:500]}")
        if resp.status_code == 204:
            return {}
        return resp.json()

    async def get_object(
        self,
        object_type: str,
        object_id: str | None = None,
        email: str | None = None,
        properties: list[str] | None = None,
    ) -> dict:
        """Fetch one CRM object by id, or by email via ``idProperty=email``."""
        params: dict[str, Any] = {}
        if properties:
            params["properties"] = ",".join(properties)
        if object_id:
            path = f"/crm/v3/objects/{object_type}/{object_id}"
        elif email:
            path = f"/crm/v3/objects/{object_type}/{email}"
            params["idProperty"] = "email"
        else:
            raise InvalidArgument("Either an object id or an email must be provided")
        return await self._request("GET", path, params=params)

    async def get_contact(
        self,
        contact_id: str | None = None,
        email: str | None = None,
        properties: list[str] | None = None,
    ) -> dict:
        return await self.get_object("contacts", contact_id, email, properties)

    async def search_objects(
        self,
        object_type: str,
        filters: list[dict],
        properties: list[str],
    ) -> list[dict]:
        """Run a CRM search, following ``paging.next.after`` until exhausted."""
        results: list[dict] = []
        after: str | None = None
        while True:
            body: dict[str, Any] = {
                "filterGroups": [{"filters": filters}],
                "properties": properties,
                "limit": SEARCH_PAGE_SIZE,
            }
            if after:
                body["after"] = after
            data = await self._request(
                "POST", f"/crm/v3/objects/{object_type}/search", json=body
            )
            results.extend(data.get("results") or [])
            after = ((data.get("paging") or {}).get("next") or {}).get("after")
            if not after:
                break
        logger.debug("hubspot_search_complete", object_type=object_type, count=len(results))
        return results

    async def update_object(
        self,
        object_type: str,
        object_id: str,
        properties: dict[str, Any],
    ) -> dict:
        return await self._request(
            "PATCH",
            f"/crm/v3/objects/{object_type}/{object_id}",
            json={"properties": properties},
        )
