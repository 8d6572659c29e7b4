"""Token store tables: users, refresh-token records and the blacklist."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import Boolean, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from device_service.core.database import (
    Base,
    IntegerPKMixin,
    StringUUIDPKMixin,
    TimestampMixin,
    UTCDateTime,
)


class UserRole(str, Enum):
    """Roles a user can hold; each maps to a ``role:{value}`` realtime topic."""

    USER = "user"
    ADMIN = "admin"


class TokenType(str, Enum):
    """The two classes of bearer token."""

    ACCESS = "access"
    REFRESH = "refresh"


class BlacklistReason(str, Enum):
    """Why a token was blacklisted."""

    LOGOUT = "logout"
    ROTATED = "rotated"
    REVOKED = "revoked"
    SECURITY = "security"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class User(Base, StringUUIDPKMixin, TimestampMixin):
    """Account holder; owns at most a bounded number of refresh tokens."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(254), unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255))
    name: Mapped[str | None] = mapped_column(String(100), default=None)
    role: Mapped[str] = mapped_column(String(20), default=UserRole.USER.value)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    failed_login_attempts: Mapped[int] = mapped_column(Integer, default=0)
    locked_until: Mapped[datetime | None] = mapped_column(UTCDateTime(), default=None)
    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), default=None)

    refresh_tokens: Mapped[list[RefreshToken]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="RefreshToken.created_at",
    )

    def is_locked(self, now: datetime | None = None) -> bool:
        """True while the lockout window is active."""
        if self.locked_until is None:
            return False
        return self.locked_until > (now or _utcnow())

    def __repr__(self) -> str:
        return f"<User(id={self.id!r}, email={self.email!r}, role={self.role!r})>"


class RefreshToken(Base, IntegerPKMixin):
    """A live refresh token issued to a user.

    ``token_id`` is the token's ``jti`` claim; the signed string itself is
    never stored.
    """

    __tablename__ = "refresh_tokens"

    token_id: Mapped[str] = mapped_column(String(64), unique=True)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
    )
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)
    last_used_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)
    user_agent: Mapped[str | None] = mapped_column(String(512), default=None)
    ip_address: Mapped[str | None] = mapped_column(String(45), default=None)

    user: Mapped[User] = relationship(back_populates="refresh_tokens")

    def __repr__(self) -> str:
        return f"<RefreshToken(token_id={self.token_id!r}, user_id={self.user_id!r})>"


class TokenBlacklist(Base, IntegerPKMixin):
    """A revoked token; presence rejects the token until ``expires_at``.

    The unique constraint on ``token_id`` is what makes concurrent rotation
    of the same refresh token single-winner.
    """

    __tablename__ = "token_blacklist"

    token_id: Mapped[str] = mapped_column(String(64), unique=True)
    token_type: Mapped[str] = mapped_column(String(10))
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    reason: Mapped[str] = mapped_column(String(20), default=BlacklistReason.LOGOUT.value)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), index=True)
    blacklisted_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)
    user_agent: Mapped[str | None] = mapped_column(String(512), default=None)
    ip_address: Mapped[str | None] = mapped_column(String(45), default=None)

    def __repr__(self) -> str:
        return f"<TokenBlacklist(token_id={self.token_id!r}, reason={self.reason!r})>"
