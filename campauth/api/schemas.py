from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "account_locked",
    "email_not_verified",
    "token_expired",
    "token_revoked",
    "token_not_found",
    "token_malformed",
    "token_invalid",
    "two_factor_required",
    "two_factor_invalid",
    "infrastructure_timeout",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code clients can branch on")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=254)
    credential: str = Field(..., min_length=1, max_length=1024)
    remember_me: bool = False

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        # Only normalized here; unknown identifiers must fail like wrong passwords
        return _normalize_unicode(value.strip().lower())


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class AccountResponse(BaseModel):
    id: str
    email: str
    username: Optional[str] = None
    roles: List[str]
    email_verified: bool = False
    created_at: datetime
    last_login_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    refresh_expires_at: datetime
    account: AccountResponse


class TwoFactorChallengeResponse(BaseModel):
    requires_two_factor: bool = True
    challenge_id: str
    challenge_expires_at: datetime


class IdentityResponse(BaseModel):
    account_id: str
    roles: List[str]
    token_expires_at: datetime
    account: AccountResponse


class LogoutAllResponse(BaseModel):
    revoked_sessions: int


class TwoFactorSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=16)


class TwoFactorSetupConfirmResponse(BaseModel):
    enabled: bool = True
    backup_codes: List[str] = Field(
        ..., description="Shown once; store them somewhere safe"
    )


class TwoFactorDisableRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=16, description="Current TOTP or backup code")
    use_backup_code: bool = False


class TwoFactorDisableResponse(BaseModel):
    enabled: bool = False
    revoked_sessions: int


class TwoFactorLoginRequest(BaseModel):
    challenge_id: str = Field(..., min_length=1, max_length=256)
    code: str = Field(..., min_length=1, max_length=16)
    use_backup_code: bool = False


class TwoFactorStatusResponse(BaseModel):
    enabled: bool = Field(..., description="Whether two-factor authentication is active")
    pending_setup: bool = Field(..., description="Setup started but not yet confirmed")
    backup_codes_remaining: int
