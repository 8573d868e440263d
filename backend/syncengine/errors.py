"""Sync engine error taxonomy and classification.

WHAT:
    Exception hierarchy raised by job handlers plus `classify_error`, which
    maps any exception to a stable error code for the run record.

WHY:
    A failed run must tell apart credential problems, transient rate limiting
    and genuine data/schema issues without being re-run. The code is derived
    from the exception type first and from its message only as a fallback.

REFERENCES:
    - syncengine/services/sync_runner.py (stores error_code on sync_runs)
"""

from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base class for all sync engine failures."""

    code = "UNKNOWN"


class ContextResolutionError(SyncError):
    """Integration context could not be loaded. Fatal, never retried in-run."""

    code = "AUTH_ERROR"

    def __init__(self, message: str, integration_id: Optional[str] = None):
        super().__init__(message)
        self.integration_id = integration_id


class IntegrationNotFound(ContextResolutionError):
    code = "INTEGRATION_NOT_FOUND"


class MissingCredential(ContextResolutionError):
    code = "AUTH_ERROR"


class RateLimitExhausted(SyncError):
    """Backoff ceiling reached. Fatal for the run, retryable by the dispatcher."""

    code = "RATE_LIMIT"

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class ApiError(SyncError):
    """Non-2xx, non-rate-limit response from a platform API."""

    code = "API_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def classified_code(self) -> str:
        if self.status_code == 401:
            return "AUTH_ERROR"
        if self.status_code == 403:
            return "PERMISSION_DENIED"
        return self.code


class PersistenceError(SyncError):
    """Failure inside the persistence transaction. The transaction was rolled back."""

    code = "DB_WRITE_ERROR"


class UnknownJobType(SyncError, ValueError):
    code = "UNKNOWN_JOB_TYPE"


# Message fragments checked, in order, for exceptions outside the taxonomy
_MESSAGE_CODES = (
    ("auth", "AUTH_ERROR"),
    ("rate limit", "RATE_LIMIT"),
    ("permission", "PERMISSION_DENIED"),
    ("database", "DB_WRITE_ERROR"),
    ("schema", "SCHEMA_MISMATCH"),
)


def classify_error(exc: BaseException) -> str:
    """Return the classified error code for an exception."""
    if isinstance(exc, ApiError):
        return exc.classified_code
    if isinstance(exc, SyncError):
        return exc.code

    message = str(exc).lower()
    for fragment, code in _MESSAGE_CODES:
        if fragment in message:
            return code
    return "UNKNOWN"


def error_payload(exc: BaseException) -> Dict[str, Any]:
    """Structured error stored on the run record."""
    payload: Dict[str, Any] = {
        "code": classify_error(exc),
        "message": str(exc)[:500],
        "type": type(exc).__name__,
    }
    if isinstance(exc, ApiError):
        payload["status_code"] = exc.status_code
        payload["body"] = (exc.body or "")[:500]
    return payload
