"""Authentication endpoints.

Endpoints:
    POST /auth/register       - Create an account and return a token pair
    POST /auth/login          - Exchange credentials for a token pair
    POST /auth/refresh        - Rotate a refresh token
    POST /auth/logout         - Blacklist the presented tokens
    POST /auth/logout-all     - Revoke every refresh token of the caller
    POST /auth/revoke         - Blacklist any token (admin)
    GET  /auth/tokens/stats   - Token store counts (admin)
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request, Response, status

from device_service.core.dependencies.auth import AdminUser, CurrentUser, TokenLedgerDep
from device_service.features.auth.models import BlacklistReason
from device_service.features.auth.schemas import (
    AuthResponse,
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    RevokeRequest,
    RevokeResponse,
    TokenPair,
    TokenStats,
    UserResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])


def _client(request: Request) -> tuple[str | None, str | None]:
    """User agent and client IP recorded alongside token records."""
    ip = request.client.host if request.client else None
    return request.headers.get("user-agent"), ip


@router.post(
    "/register",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a new user",
)
async def register(body: RegisterRequest, request: Request, ledger: TokenLedgerDep) -> AuthResponse:
    user = await ledger.register_user(body.email, body.password, name=body.name)
    user_agent, ip = _client(request)
    tokens = await ledger.issue_session(user, user_agent, ip)
    return AuthResponse(user=UserResponse.model_validate(user), tokens=tokens)


@router.post("/login", response_model=AuthResponse, summary="Log in with email and password")
async def login(body: LoginRequest, request: Request, ledger: TokenLedgerDep) -> AuthResponse:
    """Five consecutive failures lock the account (423) for the lockout window."""
    user_agent, ip = _client(request)
    user, tokens = await ledger.login(body.email, body.password, user_agent, ip)
    return AuthResponse(user=UserResponse.model_validate(user), tokens=tokens)


@router.post("/refresh", response_model=TokenPair, summary="Rotate a refresh token")
async def refresh(body: RefreshRequest, request: Request, ledger: TokenLedgerDep) -> TokenPair:
    user_agent, ip = _client(request)
    return await ledger.rotate(body.refresh_token, user_agent, ip)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT, summary="Log out this session")
async def logout(
    current: CurrentUser,
    request: Request,
    ledger: TokenLedgerDep,
    body: LogoutRequest | None = None,
) -> Response:
    user_agent, ip = _client(request)
    await ledger.blacklist(current.token, BlacklistReason.LOGOUT, user_agent, ip)
    if body is not None and body.refresh_token:
        await ledger.blacklist(body.refresh_token, BlacklistReason.LOGOUT, user_agent, ip)
    logger.info("User logged out", extra={"user_id": current.user.id})
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/logout-all", response_model=LogoutAllResponse, summary="Log out every session")
async def logout_all(current: CurrentUser, request: Request, ledger: TokenLedgerDep) -> LogoutAllResponse:
    user_agent, ip = _client(request)
    revoked = await ledger.revoke_all(current.user.id, BlacklistReason.LOGOUT)
    await ledger.blacklist(current.token, BlacklistReason.LOGOUT, user_agent, ip)
    return LogoutAllResponse(revoked_refresh_tokens=revoked)


@router.post("/revoke", response_model=RevokeResponse, summary="Blacklist a token (admin)")
async def revoke(body: RevokeRequest, admin: AdminUser, request: Request, ledger: TokenLedgerDep) -> RevokeResponse:
    user_agent, ip = _client(request)
    revoked = await ledger.blacklist(body.token, body.reason, user_agent, ip)
    logger.info("Token revoked by admin", extra={"admin_id": admin.user.id, "reason": body.reason})
    return RevokeResponse(revoked=revoked)


@router.get("/tokens/stats", response_model=TokenStats, summary="Token store statistics (admin)")
async def token_stats(admin: AdminUser, ledger: TokenLedgerDep) -> TokenStats:
    _ = admin
    return await ledger.token_stats()
