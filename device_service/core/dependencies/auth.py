"""Authentication dependencies for FastAPI route handlers.

The token ledger lives on ``app.state.token_ledger``; these dependencies
fetch it from the connection's app, verify the bearer token and load the
user.

Usage:
    from device_service.core.dependencies.auth import AdminUser, CurrentUser

    @router.get("/me")
    async def me(current: CurrentUser) -> UserResponse:
        return UserResponse.model_validate(current.user)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.requests import HTTPConnection

from device_service.core.exceptions import (
    AccountLocked,
    ForbiddenException,
    ServiceUnavailableException,
    UnauthorizedException,
    UserNotFound,
)
from device_service.features.auth.models import TokenType, User, UserRole
from device_service.features.auth.schemas import TokenClaims
from device_service.features.auth.service import TokenLedger

bearer_scheme = HTTPBearer(auto_error=False, description="Access token")


def get_token_ledger(conn: HTTPConnection) -> TokenLedger:
    """Token ledger from application state.

    Raises:
        ServiceUnavailableException: If startup did not create the ledger.
    """
    ledger = getattr(conn.app.state, "token_ledger", None)
    if ledger is None:
        raise ServiceUnavailableException("Token ledger is not available")
    return ledger


TokenLedgerDep = Annotated[TokenLedger, Depends(get_token_ledger)]


@dataclass(frozen=True, slots=True)
class AuthenticatedUser:
    """The verified caller: user row, token claims and the raw token."""

    user: User
    claims: TokenClaims
    token: str

    @property
    def is_admin(self) -> bool:
        return self.user.role == UserRole.ADMIN.value


async def get_current_user(
    ledger: TokenLedgerDep,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> AuthenticatedUser:
    """Verify the bearer access token and load its user.

    Raises:
        UnauthorizedException: Missing token, or the user no longer exists.
        TokenExpired / TokenRevoked / TokenInvalid: From the ledger (401).
        AccountLocked: The user is inside a lockout window (423).
    """
    if credentials is None or not credentials.credentials:
        raise UnauthorizedException(extra={"code": "MISSING_TOKEN"})

    token = credentials.credentials
    claims = await ledger.verify(token, TokenType.ACCESS)
    try:
        user = await ledger.get_user(claims.user_id)
    except UserNotFound as e:
        raise UnauthorizedException("User not found", extra={"code": "USER_NOT_FOUND"}) from e

    if user.is_locked():
        raise AccountLocked(locked_until=user.locked_until.isoformat() if user.locked_until else None)
    if not user.is_active:
        raise UnauthorizedException("Account is deactivated", extra={"code": "ACCOUNT_INACTIVE"})
    return AuthenticatedUser(user=user, claims=claims, token=token)


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]


async def require_admin(current: CurrentUser) -> AuthenticatedUser:
    """Raises ForbiddenException unless the caller is an admin."""
    if not current.is_admin:
        raise ForbiddenException("Admin role required", extra={"code": "FORBIDDEN"})
    return current


AdminUser = Annotated[AuthenticatedUser, Depends(require_admin)]
