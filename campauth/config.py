from __future__ import annotations

import os
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

# HMAC-SHA256 keys shorter than this are refused at startup
MIN_SIGNING_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the authentication and session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/campauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (in-memory fallbacks, runtime reset).",
    )
    build_sha: str = env_field("dev", "BUILD_SHA")

    # Signing keys
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_previous_secrets: List[str] = env_field(
        [],
        "JWT_PREVIOUS_SECRETS",
        description="Comma separated retired secrets still accepted for verification",
    )
    jwt_issuer: str = env_field("campauth", "JWT_ISSUER")
    jwt_audience: str = env_field("camp-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        0,
        "JWT_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking access token expiry",
    )
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest (defaults to the JWT secrets)",
    )
    backup_code_pepper: str | None = env_field(
        None,
        "BACKUP_CODE_PEPPER",
        description="HMAC key for backup code hashes (defaults to the JWT secrets)",
    )

    # Token lifetimes
    access_token_ttl_seconds: int = env_field(15 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    remember_me_refresh_ttl_minutes: int = env_field(
        30 * 24 * 60, "REMEMBER_ME_REFRESH_TTL_MINUTES"
    )
    refresh_reuse_revokes_family: bool = env_field(
        True,
        "REFRESH_REUSE_REVOKES_FAMILY",
        description="Revoke a whole rotation chain when a rotated refresh token is presented again",
    )

    # Login lockout
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_window_seconds: int = env_field(15 * 60, "LOCKOUT_WINDOW_SECONDS")
    lockout_duration_seconds: int = env_field(30 * 60, "LOCKOUT_DURATION_SECONDS")
    require_verified_email: bool = env_field(True, "REQUIRE_VERIFIED_EMAIL")

    # Two-factor
    two_factor_issuer: str = env_field("CampAuth", "TWO_FACTOR_ISSUER")
    two_factor_challenge_ttl_seconds: int = env_field(
        10 * 60, "TWO_FACTOR_CHALLENGE_TTL_SECONDS"
    )
    two_factor_backup_code_count: int = env_field(10, "TWO_FACTOR_BACKUP_CODE_COUNT")
    two_factor_skew_steps: int = env_field(1, "TWO_FACTOR_SKEW_STEPS")
    two_factor_max_attempts: int = env_field(5, "TWO_FACTOR_MAX_ATTEMPTS")
    two_factor_lockout_seconds: int = env_field(5 * 60, "TWO_FACTOR_LOCKOUT_SECONDS")

    # Rate limits
    auth_rate_limit: int = env_field(400, "AUTH_RATE_LIMIT")
    auth_rate_limit_window_seconds: int = env_field(
        60 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS"
    )
    general_rate_limit: int = env_field(2000, "GENERAL_RATE_LIMIT")
    general_rate_limit_window_seconds: int = env_field(
        15 * 60, "GENERAL_RATE_LIMIT_WINDOW_SECONDS"
    )
    trust_forwarded_for: bool = env_field(False, "TRUST_FORWARDED_FOR")

    # Session guard
    public_route_patterns: List[str] = env_field(
        [],
        "PUBLIC_ROUTE_PATTERNS",
        description="Extra public routes as comma separated 'METHOD regex' entries",
    )

    # Infrastructure bounds
    store_timeout_seconds: float = env_field(2.0, "STORE_TIMEOUT_SECONDS")
    counter_timeout_seconds: float = env_field(1.0, "COUNTER_TIMEOUT_SECONDS")
    infra_retry_attempts: int = env_field(1, "INFRA_RETRY_ATTEMPTS")

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    model_config = ConfigDict(extra="ignore")

    def mfa_key_material(self) -> List[str]:
        """TOTP secret keys, current first.

        Without MFA_SECRET_KEY the JWT secrets are used, retired ones included,
        so rotating JWT_SECRET keeps enrolled secrets readable.
        """
        if self.mfa_encryption_key:
            return [self.mfa_encryption_key]
        return [self.jwt_secret, *self.jwt_previous_secrets]

    def backup_code_peppers(self) -> List[str]:
        if self.backup_code_pepper:
            return [self.backup_code_pepper]
        return [self.jwt_secret, *self.jwt_previous_secrets]

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "jwt_previous_secrets", "public_route_patterns", "cors_allow_origins", mode="before"
    )
    @classmethod
    def _parse_csv(cls, value: Any) -> List[str]:
        return _split_csv(value)

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        # No generated fallback: a node with its own secret would reject every
        # token issued by its peers.
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < MIN_SIGNING_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_SIGNING_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("jwt_previous_secrets")
    @classmethod
    def _check_previous_secrets(cls, value: List[str]) -> List[str]:
        for secret in value:
            if len(secret) < MIN_SIGNING_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_PREVIOUS_SECRETS entries must be at least {MIN_SIGNING_SECRET_LENGTH} characters"
                )
        return value

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_minutes",
        "remember_me_refresh_ttl_minutes",
        "lockout_threshold",
        "lockout_window_seconds",
        "lockout_duration_seconds",
        "two_factor_challenge_ttl_seconds",
        "two_factor_backup_code_count",
        "two_factor_max_attempts",
        "two_factor_lockout_seconds",
        "auth_rate_limit_window_seconds",
        "general_rate_limit_window_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_leeway_seconds", "two_factor_skew_steps", "infra_retry_attempts")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("store_timeout_seconds", "counter_timeout_seconds")
    @classmethod
    def _require_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout must be positive")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
