"""Exceptions for the integration sync workflow.

Request-level errors carry a stable ``code`` and an HTTP ``status_code`` that
the API exception handler renders as ``{"error": code, "message": ...}``.

Provider errors are raised by remote clients during a sync run. The executor
captures them into the sync log entry; they never reach the HTTP layer.
"""

from typing import Any, Dict, Optional


class IntegrationError(Exception):
    """Base exception for request-level integration errors."""

    code = "integration_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(IntegrationError):
    """Bad input: unknown provider, invalid credentials, immutable field, etc."""
    code = "validation_error"
    status_code = 400


class DuplicateConnectionError(ValidationError):
    """An active connection to a single-connection provider already exists."""
    code = "duplicate_connection"
    status_code = 409


class AuthorizationError(IntegrationError):
    """The connection belongs to another user."""
    code = "forbidden"
    status_code = 403


class NotFoundError(IntegrationError):
    """Unknown connection id."""
    code = "not_found"
    status_code = 404


class AlreadyInProgressError(IntegrationError):
    """A sync run for this connection has not finished yet."""
    code = "sync_in_progress"
    status_code = 409


class ProviderError(Exception):
    """Base exception for failures talking to a remote provider.

    ``error_code`` is the stable string stored on the sync log entry.
    """

    error_code = "PROVIDER_ERROR"


class AuthExpiredError(ProviderError):
    """Remote rejected the stored credentials. Never retried."""
    error_code = "AUTH_EXPIRED"


class TransientProviderError(ProviderError):
    """Network blip or 5xx. Retried a bounded number of times."""
    error_code = "RETRIES_EXHAUSTED"


class ProviderTimeoutError(ProviderError):
    """The remote call or the fetch deadline timed out."""
    error_code = "TIMEOUT"


class FatalProviderError(ProviderError):
    """Unrecoverable remote failure (bad request, unexpected payload)."""
    error_code = "FETCH_FAILED"
