"""Error taxonomy shared by the dispatch, scheduling and rule services.

Request-level errors (auth, not found, bad argument, missing credential)
abort the operation and are surfaced to the caller. Per-recipient,
per-message and per-action failures are captured by the caller and never
escape a batch.
"""

from __future__ import annotations


class DispatchEngineError(Exception):
    """Base class for all engine errors."""

    code: str = "internal"
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthenticationRequired(DispatchEngineError):
    """Caller is not authorized to invoke a send."""

    code = "unauthenticated"
    status_code = 401


class NotFound(DispatchEngineError):
    """Workspace, connection, template or rule is absent."""

    code = "not-found"
    status_code = 404


class NoCredentialAvailable(DispatchEngineError):
    """Neither the requested sender nor the bot has a usable token."""

    code = "failed-precondition"
    status_code = 412


class CredentialNotFound(DispatchEngineError):
    """A user sender referenced a token id the workspace does not have."""

    code = "failed-precondition"
    status_code = 412


class RecipientLookupDegraded(DispatchEngineError):
    """Directory lookup by email failed; delivery continues with the raw handle."""

    code = "degraded"
    status_code = 200


class DispatchFailed(DispatchEngineError):
    """The chat provider rejected or failed a single delivery."""

    code = "dispatch-failed"
    status_code = 502


class MetricInputInvalid(DispatchEngineError):
    """A metric source value is missing, non-numeric, or the arithmetic is undefined."""

    code = "invalid-metric-input"
    status_code = 422


class InvalidArgument(DispatchEngineError):
    """The request is malformed."""

    code = "invalid-argument"
    status_code = 400
