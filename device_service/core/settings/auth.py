"""Token signing and session security settings."""

from __future__ import annotations

import warnings

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DEV_SECRET = "dev-only-secret-change-me-in-production-0000"


class AuthSettings(BaseSettings):
    """JWT issuance, refresh-token and lockout settings.

    Environment variables use AUTH_ prefix.
    Example: AUTH_JWT_SECRET_KEY=..., AUTH_ACCESS_TOKEN_EXPIRE_MINUTES=15
    """

    # ──────────────────────────────────────────────────────────────
    # Signing
    # ──────────────────────────────────────────────────────────────

    jwt_secret_key: SecretStr = Field(
        default=SecretStr(DEFAULT_DEV_SECRET),
        description="HMAC secret used to sign access and refresh tokens",
    )

    jwt_algorithm: str = Field(
        default="HS256",
        pattern=r"^HS(256|384|512)$",
        description="JWT signing algorithm",
    )

    issuer: str = Field(
        default="device-management-api",
        min_length=1,
        max_length=200,
        description="Value of the iss claim, checked on verification",
    )

    audience: str = Field(
        default="device-management-client",
        min_length=1,
        max_length=200,
        description="Value of the aud claim, checked on verification",
    )

    # ──────────────────────────────────────────────────────────────
    # Lifetimes
    # ──────────────────────────────────────────────────────────────

    access_token_expire_minutes: int = Field(
        default=15,
        ge=1,
        le=1440,
        description="Access token lifetime in minutes",
    )

    refresh_token_expire_days: int = Field(
        default=7,
        ge=1,
        le=365,
        description="Refresh token lifetime in days",
    )

    max_refresh_tokens_per_user: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Live refresh tokens kept per user; the oldest is evicted beyond this",
    )

    # ──────────────────────────────────────────────────────────────
    # Account lockout
    # ──────────────────────────────────────────────────────────────

    max_failed_login_attempts: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Consecutive failed logins before the account is locked",
    )

    lockout_minutes: int = Field(
        default=120,
        ge=1,
        le=10080,
        description="How long a locked account stays locked",
    )

    model_config = SettingsConfigDict(
        env_prefix="AUTH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )

    @model_validator(mode="after")
    def _warn_on_default_secret(self) -> AuthSettings:
        """Warn when the development signing secret is still in use."""
        if self.jwt_secret_key.get_secret_value() == DEFAULT_DEV_SECRET:
            warnings.warn(
                "AUTH_JWT_SECRET_KEY is not set; using the development secret",
                UserWarning,
                stacklevel=2,
            )
        return self

    @property
    def secret(self) -> str:
        """Raw signing secret."""
        return self.jwt_secret_key.get_secret_value()
