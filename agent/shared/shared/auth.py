"""Inter-service authentication.

Every service (dispatcher, scheduler, rules, CLI) shares a single
``SERVICE_AUTH_TOKEN``. Requests to protected endpoints must include
``Authorization: Bearer <token>``.

Usage in a service FastAPI app::

    from shared.auth import require_service_auth

    @app.post("/send")
    async def send(request: SendRequest, _=Depends(require_service_auth)):
        ...
"""

from __future__ import annotations

import hmac

import structlog
from fastapi import Request

from shared.config import get_settings
from shared.errors import AuthenticationRequired

logger = structlog.get_logger()


def get_service_auth_headers() -> dict[str, str]:
    """Return HTTP headers for inter-service calls.

    Returns an empty dict when no token is configured (dev mode).
    """
    token = get_settings().service_auth_token
    if not token:
        return {}
    return {"Authorization": f"Bearer {token}"}


async def require_service_auth(request: Request) -> None:
    """FastAPI dependency that validates the inter-service auth token.

    Raises ``AuthenticationRequired`` if the token is missing or incorrect.
    Skips validation when ``service_auth_token`` is empty (dev mode).
    """
    expected = get_settings().service_auth_token
    if not expected:
        logger.warning(
            "service_auth_disabled",
            path=request.url.path,
            hint="Set SERVICE_AUTH_TOKEN in .env for production",
        )
        return

    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        raise AuthenticationRequired("Missing service auth token")

    token = auth_header[7:]
    if not hmac.compare_digest(token, expected):
        logger.warning(
            "service_auth_failed",
            path=request.url.path,
            remote=request.client.host if request.client else "unknown",
        )
        raise AuthenticationRequired("Invalid service auth token")
