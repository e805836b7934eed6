"""Common schemas used across services."""

from __future__ import annotations

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Standard health check response."""

    status: str = "ok"


class ErrorResponse(BaseModel):
    """Body returned for any DispatchEngineError."""

    error: str  # taxonomy code, e.g. "not-found"
    detail: str
