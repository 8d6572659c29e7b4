"""Fixtures shared by the realtime gateway tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from device_service.core.exceptions import TokenInvalid
from device_service.features.auth.models import TokenType, User, UserRole
from device_service.features.auth.schemas import TokenClaims


def _claims(user_id: str, role: UserRole = UserRole.USER, token_id: str | None = None) -> TokenClaims:
    now = datetime.now(UTC)
    return TokenClaims(
        user_id=user_id,
        role=role,
        email=f"{user_id}@example.com",
        token_id=token_id or f"tok-{user_id}",
        token_type=TokenType.ACCESS,
        issued_at=now,
        expires_at=now + timedelta(minutes=15),
    )


def _user(user_id: str, *, locked: bool = False, active: bool = True) -> User:
    return User(
        id=user_id,
        email=f"{user_id}@example.com",
        password_hash="x",
        role=UserRole.USER.value,
        is_active=active,
        failed_login_attempts=0,
        locked_until=datetime.now(UTC) + timedelta(hours=1) if locked else None,
    )


class FakeLedger:
    """Token table in front of AsyncMock verify/get_user."""

    def __init__(self) -> None:
        self.tokens: dict[str, TokenClaims | Exception] = {}
        self.users: dict[str, User] = {}
        self.mock = MagicMock()
        self.mock.verify = AsyncMock(side_effect=self._verify)
        self.mock.get_user = AsyncMock(side_effect=self._get_user)

    def add(self, token: str, user_id: str, **user_kwargs) -> TokenClaims:
        claims = _claims(user_id, token_id=f"tok-{token}")
        self.tokens[token] = claims
        self.users.setdefault(user_id, _user(user_id, **user_kwargs))
        return claims

    def _verify(self, token: str, kind: TokenType) -> TokenClaims:
        result = self.tokens.get(token)
        if result is None:
            raise TokenInvalid("Invalid token")
        if isinstance(result, Exception):
            raise result
        return result

    def _get_user(self, user_id: str) -> User:
        return self.users[user_id]


@pytest.fixture
def fake_ledger() -> FakeLedger:
    return FakeLedger()
