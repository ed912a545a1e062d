from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on without parsing messages.
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


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class CooldownActiveError(ServiceError):
    """A code for this identifier was issued too recently (400)."""
    status_code = 400
    error_code = "otp_cooldown"


class TooManyAttemptsError(ServiceError):
    """The OTP for this identifier is locked after repeated failures (400)."""
    status_code = 400
    error_code = "otp_locked"


class AlreadyStreamingError(ServiceError):
    """Another device already holds the streaming slot (400)."""
    status_code = 400
    error_code = "already_streaming"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class BadCredentialsError(AuthenticationError):
    error_code = "bad_credentials"


class InvalidTokenError(AuthenticationError):
    error_code = "invalid_token"


class TokenExpiredError(InvalidTokenError):
    error_code = "token_expired"


class DeviceMismatchError(AuthenticationError):
    """Refresh token presented from a device other than the one it was bound to."""
    error_code = "device_mismatch"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class AccountLockedError(ServiceError):
    """Password login disabled after repeated failures (423)."""
    status_code = 423
    error_code = "account_locked"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "CooldownActiveError",
    "TooManyAttemptsError",
    "AlreadyStreamingError",
    "AuthenticationError",
    "BadCredentialsError",
    "InvalidTokenError",
    "TokenExpiredError",
    "DeviceMismatchError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "AccountLockedError",
    "RateLimitedError",
    "ServerError",
]
