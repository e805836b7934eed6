"""Map the engine's error taxonomy onto HTTP responses."""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from shared.errors import DispatchEngineError
from shared.schemas.common import ErrorResponse

logger = structlog.get_logger()


async def _handle_engine_error(request: Request, exc: DispatchEngineError) -> JSONResponse:
    logger.info(
        "request_failed",
        path=request.url.path,
        error=exc.code,
        detail=exc.message,
    )
    body = ErrorResponse(error=exc.code, detail=exc.message)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


def register_error_handlers(app: FastAPI) -> None:
    """Translate any DispatchEngineError into ``{"error", "detail"}``."""
    app.add_exception_handler(DispatchEngineError, _handle_engine_error)
