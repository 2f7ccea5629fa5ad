from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for auth-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500/503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Bad credentials, or an invalid, expired or revoked token (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Registry session expired or was destroyed (401)."""
    pass


class ForbiddenError(ServiceError):
    """Caller lacks the role or ownership required (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate email or conflicting assignment (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class DeliveryError(ServerError):
    """An outbound message the caller depends on could not be sent (503)."""
    status_code = 503


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "SessionExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "DeliveryError",
]
