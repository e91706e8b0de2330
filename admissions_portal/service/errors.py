from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:
    - unauthenticated / invalid_token / session_expired / session_invalidated (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - validation_error (400)
    - server_error (500)
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

    @property
    def headers(self) -> dict:
        return {}


class ValidationError(ServiceError):
    """Input rejected before any state changed."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """The request carries no usable session; clients sign out on any of these."""
    status_code = 401
    error_code = "unauthenticated"

    @property
    def headers(self) -> dict:
        return {"WWW-Authenticate": "Bearer"}


class UnauthenticatedError(AuthenticationError):
    """No credentials presented, or credentials rejected at login."""
    error_code = "unauthenticated"


class InvalidTokenError(AuthenticationError):
    """Token signature or structure did not verify."""
    error_code = "invalid_token"


class SessionExpiredError(AuthenticationError):
    """Token is past its expiry timestamp."""
    error_code = "session_expired"


class SessionInvalidatedError(AuthenticationError):
    """Token predates a session version bump, or was evicted."""
    error_code = "session_invalidated"


class ForbiddenError(ServiceError):
    """Signed in, but the role does not allow the operation."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Principal or resource does not exist."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate email on registration."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Login attempts exhausted for the current window."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after_seconds: int, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after_seconds = max(1, int(retry_after_seconds))
        self.detail.setdefault("retryAfterSeconds", self.retry_after_seconds)

    @property
    def headers(self) -> dict:
        return {"Retry-After": str(self.retry_after_seconds)}


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "UnauthenticatedError",
    "InvalidTokenError",
    "SessionExpiredError",
    "SessionInvalidatedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
]
