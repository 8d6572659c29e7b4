"""Auth schemas: token claims, token pairs and request/response bodies."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from device_service.core.schemas import CustomBase
from device_service.features.auth.models import BlacklistReason, TokenType, UserRole

if TYPE_CHECKING:
    from device_service.features.auth.models import User

# ──────────────────────────────────────────────────────────────
# Ledger value objects
# ──────────────────────────────────────────────────────────────


class SubjectClaims(BaseModel):
    """Identity signed into every token."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    role: UserRole
    email: str | None = None

    @classmethod
    def from_user(cls, user: User) -> SubjectClaims:
        return cls(user_id=user.id, role=UserRole(user.role), email=user.email)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class TokenClaims(SubjectClaims):
    """Verified claims of an access or refresh token."""

    token_id: str
    token_type: TokenType
    issued_at: datetime
    expires_at: datetime

    @property
    def subject(self) -> SubjectClaims:
        """The identity part, equal to what the token was issued for."""
        return SubjectClaims(user_id=self.user_id, role=self.role, email=self.email)


class TokenPair(BaseModel):
    """An access token and its companion refresh token."""

    access_token: str
    refresh_token: str
    token_type: Literal["bearer"] = "bearer"
    expires_in: int = Field(description="Access token lifetime in seconds")


class TokenStats(BaseModel):
    """Counts of blacklisted tokens and live refresh tokens."""

    blacklisted_tokens: int = Field(ge=0)
    active_refresh_tokens: int = Field(ge=0)


# ──────────────────────────────────────────────────────────────
# Requests
# ──────────────────────────────────────────────────────────────


class RegisterRequest(CustomBase):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    name: str | None = Field(default=None, max_length=100)


class LoginRequest(CustomBase):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)


class RefreshRequest(CustomBase):
    refresh_token: str = Field(min_length=1)


class LogoutRequest(CustomBase):
    refresh_token: str | None = None


class RevokeRequest(CustomBase):
    token: str = Field(min_length=1)
    reason: BlacklistReason = BlacklistReason.REVOKED


# ──────────────────────────────────────────────────────────────
# Responses
# ──────────────────────────────────────────────────────────────


class UserResponse(CustomBase):
    id: str
    email: str
    name: str | None = None
    role: UserRole
    is_active: bool
    last_login_at: datetime | None = None
    created_at: datetime


class AuthResponse(BaseModel):
    """User profile plus a freshly issued token pair."""

    user: UserResponse
    tokens: TokenPair


class RevokeResponse(BaseModel):
    revoked: bool


class LogoutAllResponse(BaseModel):
    revoked_refresh_tokens: int = Field(ge=0)
