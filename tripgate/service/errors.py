from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries the HTTP ``status_code`` and the stable ``error_code``
    rendered in the error envelope. Either can be overridden per raise.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Any] = None,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail
        self.headers = headers or {}


class ValidationError(ServiceError):
    """Malformed input (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidCredentialsError(ServiceError):
    """Login failed; one message for every cause (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class InvalidOrExpiredTokenError(ServiceError):
    """Verification or reset token missing, wrong, or past expiry (400)."""
    status_code = 400
    error_code = "invalid_or_expired_token"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class AlreadyVerifiedError(ServiceError):
    status_code = 400
    error_code = "already_verified"


class InvalidFieldError(ServiceError):
    """Profile update named a field outside the editable set (400)."""
    status_code = 400
    error_code = "invalid_field"


class UnauthorizedError(ServiceError):
    """Missing or invalid session on a protected route (401)."""
    status_code = 401
    error_code = "unauthorized"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class AuthProviderError(ServiceError):
    """Federated sign-in failed at or before the identity provider (502)."""
    status_code = 502
    error_code = "auth_provider_error"


class InternalError(ServiceError):
    """Store, hashing or email dependency failed or timed out (500)."""
    status_code = 500
    error_code = "internal_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "InvalidOrExpiredTokenError",
    "NotFoundError",
    "AlreadyVerifiedError",
    "InvalidFieldError",
    "UnauthorizedError",
    "RateLimitedError",
    "AuthProviderError",
    "InternalError",
]
