"""Password hashing and JWT encoding primitives.

The ledger builds on these; nothing here touches the database.
"""

from __future__ import annotations

import secrets
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import jwt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from jwt.exceptions import ExpiredSignatureError, PyJWTError

from device_service.core.exceptions import TokenExpired, TokenInvalid
from device_service.features.auth.models import TokenType

if TYPE_CHECKING:
    from device_service.core.settings.auth import AuthSettings

# Argon2id with 64 MiB memory, 3 iterations, parallelism 4
ph = PasswordHasher(
    time_cost=3,
    memory_cost=65536,
    parallelism=4,
    hash_len=32,
    salt_len=16,
)

REQUIRED_CLAIMS = ["exp", "iat", "sub", "jti", "type"]


def hash_password(password: str) -> str:
    """Hash a password using Argon2id."""
    return ph.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash using constant-time comparison."""
    try:
        return ph.verify(password_hash, password)
    except (VerificationError, InvalidHashError):
        return False


def new_token_id() -> str:
    """Random 128-bit hex identifier used as the ``jti`` claim."""
    return secrets.token_hex(16)


def encode_token(
    *,
    user_id: str,
    role: str,
    email: str | None,
    token_type: TokenType,
    lifetime: timedelta,
    settings: AuthSettings,
    now: datetime | None = None,
) -> tuple[str, dict[str, Any]]:
    """Sign a token and return it together with its payload."""
    issued_at = now or datetime.now(UTC)
    payload: dict[str, Any] = {
        "sub": user_id,
        "role": role,
        "email": email,
        "type": token_type.value,
        "jti": new_token_id(),
        "iat": issued_at,
        "exp": issued_at + lifetime,
        "iss": settings.issuer,
        "aud": settings.audience,
    }
    token = jwt.encode(payload, settings.secret, algorithm=settings.jwt_algorithm)
    return str(token), payload


def decode_unverified(token: str) -> dict[str, Any]:
    """Read claims without checking signature or expiry.

    Used to find the ``jti`` for the blacklist lookup and to blacklist
    tokens that have already expired.

    Raises:
        TokenInvalid: If the token is not a decodable JWT or carries no ``jti``.
    """
    try:
        payload = jwt.decode(token, options={"verify_signature": False})
    except PyJWTError as e:
        raise TokenInvalid("Malformed token") from e
    if not isinstance(payload.get("jti"), str) or not payload.get("sub"):
        raise TokenInvalid("Token is missing required claims")
    return payload


def decode_verified(token: str, token_type: TokenType, settings: AuthSettings) -> dict[str, Any]:
    """Verify signature, expiry, issuer, audience and token type.

    Raises:
        TokenExpired: If the signed expiry has passed.
        TokenInvalid: On any other signature, format or claim mismatch.
    """
    try:
        payload = jwt.decode(
            token,
            settings.secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.audience,
            issuer=settings.issuer,
            options={"require": REQUIRED_CLAIMS},
        )
    except ExpiredSignatureError as e:
        raise TokenExpired(token_id=_safe_jti(token)) from e
    except PyJWTError as e:
        raise TokenInvalid(f"Invalid token: {e}") from e

    if payload.get("type") != token_type.value:
        raise TokenInvalid(f"Expected a {token_type.value} token")
    return payload


def expiry_of(payload: dict[str, Any]) -> datetime:
    """Expiry of a decoded payload as an aware UTC datetime."""
    exp = payload.get("exp")
    if not isinstance(exp, int | float):
        raise TokenInvalid("Token is missing required claims")
    return datetime.fromtimestamp(exp, tz=UTC)


def _safe_jti(token: str) -> str | None:
    try:
        return decode_unverified(token)["jti"]
    except TokenInvalid:
        return None
