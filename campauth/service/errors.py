from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on. ``message`` is always safe to show to the
    caller; diagnostic context goes to the logs, never into ``message``.
    ``retry_after`` (seconds) is rendered as a ``Retry-After`` header.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.retry_after = retry_after


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "authentication required"


class AuthenticationRequired(AuthenticationError):
    pass


class InvalidCredentials(AuthenticationError):
    """Unknown identifier and wrong password are indistinguishable."""
    error_code = "invalid_credentials"
    default_message = "invalid credentials"


class AccountLocked(ServiceError):
    """Too many failed attempts; carries the remaining lock time."""
    status_code = 423
    error_code = "account_locked"
    default_message = "account temporarily locked after repeated failed attempts"


class EmailNotVerified(ServiceError):
    status_code = 403
    error_code = "email_not_verified"
    default_message = "email address has not been verified"


class TokenError(AuthenticationError):
    default_message = "invalid token"


class TokenExpired(TokenError):
    """Distinct from other token failures so clients know to refresh."""
    error_code = "token_expired"
    default_message = "token expired"


class TokenRevoked(TokenError):
    error_code = "token_revoked"
    default_message = "token revoked"


class TokenNotFound(TokenError):
    error_code = "token_not_found"
    default_message = "token not recognized"


class TokenMalformed(TokenError):
    error_code = "token_malformed"
    default_message = "malformed token"


class TokenInvalid(TokenError):
    error_code = "token_invalid"
    default_message = "invalid token"


class TwoFactorRequired(AuthenticationError):
    error_code = "two_factor_required"
    default_message = "two-factor verification required"


class TwoFactorInvalid(AuthenticationError):
    error_code = "two_factor_invalid"
    default_message = "invalid verification code"


class TwoFactorAlreadyEnabled(ValidationError):
    default_message = "two-factor authentication is already enabled"


class TwoFactorNotEnabled(ValidationError):
    default_message = "two-factor authentication is not enabled"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "insufficient permissions"


class RateLimited(ServiceError):
    status_code = 429
    error_code = "rate_limited"
    default_message = "too many requests"


class InfrastructureTimeout(ServiceError):
    """A backing store or counter service did not answer in time (503)."""
    status_code = 503
    error_code = "infrastructure_timeout"
    default_message = "service temporarily unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AuthenticationRequired",
    "InvalidCredentials",
    "AccountLocked",
    "EmailNotVerified",
    "TokenError",
    "TokenExpired",
    "TokenRevoked",
    "TokenNotFound",
    "TokenMalformed",
    "TokenInvalid",
    "TwoFactorRequired",
    "TwoFactorInvalid",
    "TwoFactorAlreadyEnabled",
    "TwoFactorNotEnabled",
    "ForbiddenError",
    "RateLimited",
    "InfrastructureTimeout",
]
