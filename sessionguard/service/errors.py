from __future__ import annotations

from typing import Optional

INVALID_CREDENTIALS_MESSAGE = "invalid credentials"
SESSION_EXPIRED_MESSAGE = "session expired"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class defines an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    - service_unavailable (503)
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
    """Authentication failed or missing (401).

    ``reason`` carries the precise failure for logs and callers; the
    message stays one of two public strings so clients cannot tell a
    forged token from a revoked one.
    """

    status_code = 401
    error_code = "unauthorized"
    reason: str = "unauthorized"
    public_message: str = INVALID_CREDENTIALS_MESSAGE

    def __init__(self, message: Optional[str] = None, **kwargs) -> None:
        super().__init__(message or self.public_message, **kwargs)


class InvalidCredentials(AuthenticationError):
    reason = "invalid_credentials"


class IdentityInactive(AuthenticationError):
    reason = "identity_inactive"


class InvalidToken(AuthenticationError):
    """Malformed token, bad signature, wrong issuer/audience or wrong type."""
    reason = "invalid_token"


class SessionExpiredError(AuthenticationError):
    """Credential was valid once but no longer is."""
    reason = "session_expired"
    public_message = SESSION_EXPIRED_MESSAGE


class TokenExpired(SessionExpiredError):
    reason = "token_expired"


class SessionRevoked(SessionExpiredError):
    """Session missing, deactivated, past its expiry or owned by someone else."""
    reason = "session_revoked"


class TokenRevoked(SessionExpiredError):
    reason = "token_revoked"


class RefreshTokenInvalid(AuthenticationError):
    reason = "refresh_token_invalid"


class RefreshTokenExpired(SessionExpiredError):
    reason = "refresh_token_expired"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailableError(ServiceError):
    """A required backing store is down; requests fail closed (503)."""
    status_code = 503
    error_code = "service_unavailable"

    def __init__(self, message: str = "service unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PersistenceFailure(ServiceUnavailableError):
    reason = "persistence_unavailable"


__all__ = [
    "INVALID_CREDENTIALS_MESSAGE",
    "SESSION_EXPIRED_MESSAGE",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "IdentityInactive",
    "InvalidToken",
    "SessionExpiredError",
    "TokenExpired",
    "SessionRevoked",
    "TokenRevoked",
    "RefreshTokenInvalid",
    "RefreshTokenExpired",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "ServiceUnavailableError",
    "PersistenceFailure",
]
