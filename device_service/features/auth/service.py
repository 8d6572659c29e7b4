"""Token ledger: issues, verifies, rotates and revokes bearer tokens.

Refresh-token records and blacklist entries live in the database. Every
operation opens its own session from the factory and commits or rolls back
as a unit, so a failed rotation never leaves the old token blacklisted
without a new pair (or the reverse).
"""

from __future__ import annotations

import asyncio
import inspect
import weakref
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from device_service.core.exceptions import (
    AccountLocked,
    ConflictException,
    InvalidCredentials,
    StoreFailure,
    TokenError,
    TokenInvalid,
    TokenRevoked,
    UserNotFound,
)
from device_service.core.services import BaseService
from device_service.features.auth.models import (
    BlacklistReason,
    RefreshToken,
    TokenBlacklist,
    TokenType,
    User,
    UserRole,
)
from device_service.features.auth.repository import (
    BlacklistRepository,
    RefreshTokenRepository,
    UserRepository,
)
from device_service.features.auth.schemas import SubjectClaims, TokenClaims, TokenPair, TokenStats
from device_service.features.auth.security import (
    decode_unverified,
    decode_verified,
    encode_token,
    expiry_of,
    hash_password,
    verify_password,
)
from device_service.infra.database import session_scope
from device_service.infra.metrics.prometheus import token_operations_total

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from device_service.core.settings.auth import AuthSettings

    RevocationListener = Callable[[str, str | None, str], Awaitable[None] | None]


def _now() -> datetime:
    return datetime.now(UTC)


class TokenLedger(BaseService):
    """Authoritative store of token lifecycle state.

    Example:
        ledger = TokenLedger(session_factory, get_auth_settings())
        pair = await ledger.issue_session(user)
        claims = await ledger.verify(pair.access_token, "access")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: AuthSettings,
    ) -> None:
        super().__init__()
        self._session_factory = session_factory
        self._settings = settings
        self._users = UserRepository()
        self._refresh_tokens = RefreshTokenRepository()
        self._blacklist = BlacklistRepository()
        self._user_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._listeners: list[RevocationListener] = []

    @property
    def settings(self) -> AuthSettings:
        return self._settings

    @property
    def access_token_lifetime(self) -> timedelta:
        return timedelta(minutes=self._settings.access_token_expire_minutes)

    @property
    def refresh_token_lifetime(self) -> timedelta:
        return timedelta(days=self._settings.refresh_token_expire_days)

    # ──────────────────────────────────────────────────────────────
    # Issuing
    # ──────────────────────────────────────────────────────────────

    def issue_access_token(self, claims: SubjectClaims) -> str:
        """Sign a short-lived access token. No side effects."""
        token, _ = encode_token(
            user_id=claims.user_id,
            role=UserRole(claims.role).value,
            email=claims.email,
            token_type=TokenType.ACCESS,
            lifetime=self.access_token_lifetime,
            settings=self._settings,
        )
        token_operations_total.labels(operation="issue_access", outcome="success").inc()
        return token

    def issue_refresh_token(self, claims: SubjectClaims) -> str:
        """Sign a long-lived refresh token.

        The caller must persist it with :meth:`store_refresh_token`, otherwise
        it will never verify.
        """
        token, _ = encode_token(
            user_id=claims.user_id,
            role=UserRole(claims.role).value,
            email=claims.email,
            token_type=TokenType.REFRESH,
            lifetime=self.refresh_token_lifetime,
            settings=self._settings,
        )
        token_operations_total.labels(operation="issue_refresh", outcome="success").inc()
        return token

    async def store_refresh_token(
        self,
        user_id: str,
        token: str,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> list[str]:
        """Persist a refresh-token record, evicting the user's oldest beyond the cap.

        Returns:
            token_ids of evicted records.
        """
        async with self._transaction("store_refresh") as session:
            return await self._add_refresh_record(session, user_id, token, user_agent, ip_address)

    async def issue_session(
        self,
        user: User,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> TokenPair:
        """Issue an access/refresh pair for ``user`` and persist the refresh record."""
        subject = SubjectClaims.from_user(user)
        pair = self._pair_for(subject)
        await self.store_refresh_token(user.id, pair.refresh_token, user_agent, ip_address)
        return pair

    # ──────────────────────────────────────────────────────────────
    # Verification
    # ──────────────────────────────────────────────────────────────

    async def verify(self, token: str, kind: TokenType | str) -> TokenClaims:
        """Verify a token of the given kind and return its claims.

        Raises:
            TokenRevoked: A blacklist entry exists. Checked before signature and expiry.
            TokenExpired: The signed expiry has passed.
            TokenInvalid: Signature, format or claim mismatch, or (refresh only)
                no live record for the subject.
            UserNotFound: (refresh only) the subject no longer exists.
            StoreFailure: The token store could not be read.
        """
        token_type = TokenType(kind)
        try:
            async with self._transaction("verify") as session:
                claims = await self._verify_in(session, token, token_type)
        except TokenError as e:
            token_operations_total.labels(operation="verify", outcome=(e.code or "invalid").lower()).inc()
            raise
        token_operations_total.labels(operation="verify", outcome="success").inc()
        return claims

    async def get_user(self, user_id: str) -> User:
        """Load a user by id.

        Raises:
            UserNotFound: If no such user exists.
        """
        async with self._transaction("get_user") as session:
            user = await self._users.get(session, user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    # ──────────────────────────────────────────────────────────────
    # Rotation and revocation
    # ──────────────────────────────────────────────────────────────

    async def rotate(
        self,
        old_refresh_token: str,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> TokenPair:
        """Exchange a refresh token for a new pair, exactly once.

        The old token is blacklisted, its record deleted and the new record
        inserted in one transaction. Of two concurrent rotations of the same
        token, exactly one succeeds; the other raises TokenRevoked.
        """
        user_id = decode_unverified(old_refresh_token)["sub"]

        async with self._lock_for(user_id):
            try:
                async with self._transaction("rotate") as session:
                    claims = await self._verify_in(session, old_refresh_token, TokenType.REFRESH)
                    user = await self._users.get(session, claims.user_id)
                    if user is None:
                        raise UserNotFound(claims.user_id)
                    if user.is_locked():
                        raise AccountLocked(locked_until=_isoformat(user.locked_until))

                    session.add(
                        TokenBlacklist(
                            token_id=claims.token_id,
                            token_type=TokenType.REFRESH.value,
                            user_id=claims.user_id,
                            reason=BlacklistReason.ROTATED.value,
                            expires_at=claims.expires_at,
                            user_agent=user_agent,
                            ip_address=ip_address,
                        )
                    )
                    await session.flush()
                    await self._refresh_tokens.delete_by_token_id(session, claims.token_id)

                    pair = self._pair_for(SubjectClaims.from_user(user))
                    await self._add_refresh_record(
                        session, user.id, pair.refresh_token, user_agent, ip_address
                    )
            except IntegrityError as e:
                # Blacklist unique constraint: another rotation of this token committed first
                token_operations_total.labels(operation="rotate", outcome="conflict").inc()
                self.logger.warning(
                    "Concurrent refresh token rotation rejected",
                    extra={"user_id": user_id, "operation": "rotate"},
                )
                raise TokenRevoked("Refresh token has already been used") from e
            except TokenError as e:
                token_operations_total.labels(operation="rotate", outcome=(e.code or "invalid").lower()).inc()
                raise

        token_operations_total.labels(operation="rotate", outcome="success").inc()
        self.logger.info("Refresh token rotated", extra={"user_id": user_id, "token_id": claims.token_id})
        return pair

    async def blacklist(
        self,
        token: str,
        reason: BlacklistReason | str = BlacklistReason.LOGOUT,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> bool:
        """Blacklist a token until its own expiry.

        Expired tokens are accepted. A refresh token's record is removed too.
        Blacklisting an already-blacklisted token succeeds.

        Raises:
            TokenInvalid: If the token cannot be decoded at all.
        """
        reason = BlacklistReason(reason)
        payload = decode_unverified(token)
        token_id: str = payload["jti"]
        user_id = str(payload["sub"])
        token_type = TokenType.REFRESH if payload.get("type") == TokenType.REFRESH.value else TokenType.ACCESS

        try:
            async with self._transaction("blacklist") as session:
                if await self._blacklist.exists(session, token_id):
                    token_operations_total.labels(operation="blacklist", outcome="duplicate").inc()
                    return True
                session.add(
                    TokenBlacklist(
                        token_id=token_id,
                        token_type=token_type.value,
                        user_id=user_id,
                        reason=reason.value,
                        expires_at=expiry_of(payload),
                        user_agent=user_agent,
                        ip_address=ip_address,
                    )
                )
                await session.flush()
                if token_type is TokenType.REFRESH:
                    await self._refresh_tokens.delete_by_token_id(session, token_id)
        except IntegrityError:
            # Lost a race with an identical insert; the token is blacklisted either way
            token_operations_total.labels(operation="blacklist", outcome="duplicate").inc()
            return True

        token_operations_total.labels(operation="blacklist", outcome="success").inc()
        self.logger.info(
            "Token blacklisted",
            extra={"user_id": user_id, "token_id": token_id, "token_type": token_type.value, "reason": reason.value},
        )
        await self._notify(user_id, token_id, reason.value)
        return True

    async def revoke_all(self, user_id: str, reason: BlacklistReason | str = BlacklistReason.REVOKED) -> int:
        """Blacklist and delete every live refresh token of a user.

        Live realtime connections of the user are force-disconnected through
        the revocation listeners.

        Returns:
            Number of refresh tokens revoked.

        Raises:
            UserNotFound: If the user does not exist.
        """
        reason = BlacklistReason(reason)
        async with self._lock_for(user_id):
            async with self._transaction("revoke_all") as session:
                if await self._users.get(session, user_id) is None:
                    raise UserNotFound(user_id)

                records = await self._refresh_tokens.list_live_for_user(session, user_id)
                already = await self._blacklist.existing_ids(session, (r.token_id for r in records))
                for record in records:
                    if record.token_id in already:
                        continue
                    session.add(
                        TokenBlacklist(
                            token_id=record.token_id,
                            token_type=TokenType.REFRESH.value,
                            user_id=user_id,
                            reason=reason.value,
                            expires_at=record.expires_at,
                        )
                    )
                await self._refresh_tokens.delete_for_user(session, user_id)
                count = len(records)

        token_operations_total.labels(operation="revoke_all", outcome="success").inc()
        self.logger.info("All refresh tokens revoked", extra={"user_id": user_id, "count": count, "reason": reason.value})
        await self._notify(user_id, None, reason.value)
        return count

    # ──────────────────────────────────────────────────────────────
    # Maintenance and stats
    # ──────────────────────────────────────────────────────────────

    async def sweep_expired(self) -> int:
        """Delete blacklist entries and refresh records past expiry.

        Returns:
            Total rows removed.
        """
        now = _now()
        async with self._transaction("sweep") as session:
            blacklisted = await self._blacklist.purge_expired(session, now=now)
            refresh = await self._refresh_tokens.purge_expired(session, now=now)

        total = blacklisted + refresh
        token_operations_total.labels(operation="sweep", outcome="success").inc()
        self.logger.info(
            "Expired tokens swept",
            extra={"blacklist_removed": blacklisted, "refresh_removed": refresh, "total": total},
        )
        return total

    async def token_stats(self) -> TokenStats:
        async with self._transaction("stats") as session:
            blacklisted = await self._blacklist.count(session)
            active = await self._refresh_tokens.count_active(session)
        return TokenStats(blacklisted_tokens=blacklisted, active_refresh_tokens=active)

    # ──────────────────────────────────────────────────────────────
    # User store operations used by the auth routes
    # ──────────────────────────────────────────────────────────────

    async def register_user(
        self,
        email: str,
        password: str,
        name: str | None = None,
        role: UserRole = UserRole.USER,
    ) -> User:
        """Create a user.

        Raises:
            ConflictException: If the email is already registered.
        """
        try:
            async with self._transaction("register") as session:
                if await self._users.get_by_email(session, email) is not None:
                    raise ConflictException("Email already registered", type="email-taken")
                user = await self._users.create_user(
                    session,
                    email=email,
                    password_hash=hash_password(password),
                    name=name,
                    role=role,
                )
        except IntegrityError as e:
            raise ConflictException("Email already registered", type="email-taken") from e

        self.logger.info("User registered", extra={"user_id": user.id, "role": user.role})
        return user

    async def authenticate(self, email: str, password: str) -> User:
        """Check credentials and apply the failed-login lockout policy.

        Raises:
            AccountLocked: The account is inside its lockout window.
            InvalidCredentials: Unknown email, wrong password or inactive account.
        """
        now = _now()
        failure: InvalidCredentials | AccountLocked | None = None
        async with self._transaction("login") as session:
            user = await self._users.get_by_email(session, email)
            if user is None:
                verify_password(password, _dummy_hash())
                raise InvalidCredentials
            if user.is_locked(now):
                raise AccountLocked(locked_until=_isoformat(user.locked_until))
            if not user.is_active:
                raise InvalidCredentials("Account is deactivated")

            if verify_password(password, user.password_hash):
                await self._users.reset_failed_attempts(session, user, now=now)
            else:
                locked = await self._users.increment_failed_attempts(
                    session,
                    user,
                    max_attempts=self._settings.max_failed_login_attempts,
                    lockout=timedelta(minutes=self._settings.lockout_minutes),
                    now=now,
                )
                failure = InvalidCredentials()
                if locked:
                    self.logger.warning(
                        "Account locked after repeated failed logins",
                        extra={"user_id": user.id, "attempts": user.failed_login_attempts},
                    )
                    failure = AccountLocked(locked_until=_isoformat(user.locked_until))

        # Raised outside the transaction so the counter update commits
        if failure is not None:
            raise failure
        return user

    async def login(
        self,
        email: str,
        password: str,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> tuple[User, TokenPair]:
        user = await self.authenticate(email, password)
        pair = await self.issue_session(user, user_agent, ip_address)
        self.logger.info("User logged in", extra={"user_id": user.id})
        return user, pair

    # ──────────────────────────────────────────────────────────────
    # Revocation listeners
    # ──────────────────────────────────────────────────────────────

    def add_revocation_listener(self, listener: RevocationListener) -> None:
        """Register a callable ``(user_id, token_id | None, reason)``.

        ``token_id`` is None when every token of the user was revoked.
        """
        self._listeners.append(listener)

    async def _notify(self, user_id: str, token_id: str | None, reason: str) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(user_id, token_id, reason)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self.logger.exception(
                    "Revocation listener failed",
                    extra={"user_id": user_id, "token_id": token_id, "reason": reason},
                )

    # ──────────────────────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────────────────────

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        """Session scope that maps database errors to StoreFailure.

        IntegrityError passes through; callers decide what a constraint
        violation means.
        """
        try:
            async with session_scope(self._session_factory) as session:
                yield session
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            token_operations_total.labels(operation=operation, outcome="store_failure").inc()
            self.logger.exception("Token store operation failed", extra={"operation": operation})
            raise StoreFailure(operation=operation) from e

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    def _pair_for(self, subject: SubjectClaims) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access_token(subject),
            refresh_token=self.issue_refresh_token(subject),
            expires_in=int(self.access_token_lifetime.total_seconds()),
        )

    async def _add_refresh_record(
        self,
        session: AsyncSession,
        user_id: str,
        token: str,
        user_agent: str | None,
        ip_address: str | None,
    ) -> list[str]:
        payload = decode_unverified(token)
        if str(payload["sub"]) != user_id or payload.get("type") != TokenType.REFRESH.value:
            raise TokenInvalid("Refresh token does not belong to this user")
        now = _now()
        record = RefreshToken(
            token_id=payload["jti"],
            user_id=user_id,
            expires_at=expiry_of(payload),
            created_at=now,
            last_used_at=now,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        return await self._refresh_tokens.add(
            session, record, max_per_user=self._settings.max_refresh_tokens_per_user
        )

    async def _verify_in(self, session: AsyncSession, token: str, token_type: TokenType) -> TokenClaims:
        unverified = decode_unverified(token)
        token_id: str = unverified["jti"]

        if await self._blacklist.exists(session, token_id):
            raise TokenRevoked(token_id=token_id)

        payload = decode_verified(token, token_type, self._settings)
        claims = _claims_from(payload)

        if token_type is TokenType.REFRESH:
            if await self._users.get(session, claims.user_id) is None:
                raise UserNotFound(claims.user_id)
            record = await self._refresh_tokens.get_live(session, claims.user_id, claims.token_id)
            if record is None:
                raise TokenInvalid("Refresh token is not recognised", token_id=claims.token_id)
            record.last_used_at = _now()
            await session.flush()

        self._lazy.debug(lambda: f"Verified {token_type.value} token {token_id} for {claims.user_id}")
        return claims


def _claims_from(payload: dict[str, Any]) -> TokenClaims:
    try:
        return TokenClaims(
            user_id=str(payload["sub"]),
            role=UserRole(payload.get("role", UserRole.USER.value)),
            email=payload.get("email"),
            token_id=payload["jti"],
            token_type=TokenType(payload["type"]),
            issued_at=datetime.fromtimestamp(payload["iat"], tz=UTC),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=UTC),
        )
    except (KeyError, ValueError, TypeError) as e:
        raise TokenInvalid("Token claims are malformed") from e


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    # Unknown-email logins spend the same time verifying as real ones
    return hash_password("timing-equalizer")
