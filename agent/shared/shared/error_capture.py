"""Async helper for persisting errors to the error_logs table.

Usage (fire-and-forget from async code):
    import asyncio
    from shared.error_capture import capture_error

    asyncio.create_task(capture_error(
        session_factory,
        service="scheduler",
        error_type="message_failed",
        error_message=str(e),
        operation="run_poll_cycle",
        context={"recipients": 3},
        scheduled_message_id=str(message_id),
    ))

Never raises: a failure to record an error is logged and dropped.
"""

from __future__ import annotations

import re
import uuid

import structlog

from shared.models.error_log import ErrorLog

logger = structlog.get_logger()

# Keys whose values should be redacted before storing in the DB.
_SECRET_KEY_PATTERN = re.compile(
    r"(token|key|secret|password|credential|auth|api_key|access_key)",
    re.IGNORECASE,
)


def _sanitize_context(context: dict | None) -> dict | None:
    """Strip secret-looking values from a dict before persisting."""
    if not context:
        return context
    sanitized = {}
    for k, v in context.items():
        if _SECRET_KEY_PATTERN.search(k):
            sanitized[k] = "[REDACTED]"
        else:
            sanitized[k] = v
    return sanitized


def _parse_uuid(value: str | uuid.UUID | None) -> uuid.UUID | None:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(value)
    except (ValueError, AttributeError):
        return None


async def capture_error(
    session_factory,
    *,
    service: str,
    error_type: str,
    error_message: str,
    operation: str | None = None,
    context: dict | None = None,
    stack_trace: str | None = None,
    workspace_id: str | uuid.UUID | None = None,
    scheduled_message_id: str | uuid.UUID | None = None,
    rule_id: str | uuid.UUID | None = None,
) -> None:
    """Persist an error to the error_logs table.

    Safe to call with asyncio.create_task(), never raises.
    """
    try:
        async with session_factory() as session:
            record = ErrorLog(
                service=service,
                error_type=error_type,
                error_message=error_message,
                operation=operation,
                context=_sanitize_context(context),
                stack_trace=stack_trace,
                workspace_id=_parse_uuid(workspace_id),
                scheduled_message_id=_parse_uuid(scheduled_message_id),
                rule_id=_parse_uuid(rule_id),
            )
            session.add(record)
            await session.commit()

        logger.debug(
            "error_captured",
            service=service,
            error_type=error_type,
            operation=operation,
        )
    except Exception:
        logger.warning("error_capture_failed", exc_info=True)
