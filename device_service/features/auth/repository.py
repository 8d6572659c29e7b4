"""Repositories for users, refresh-token records and the token blacklist.

All methods take the session explicitly so one ledger operation can span
several repositories inside a single transaction.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, select

from device_service.core.database import BaseRepository
from device_service.features.auth.models import RefreshToken, TokenBlacklist, User, UserRole

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession


def _now() -> datetime:
    return datetime.now(UTC)


class UserRepository(BaseRepository[User]):
    """User lookups and failed-login bookkeeping."""

    __slots__ = ()

    def __init__(self) -> None:
        super().__init__(User)

    async def get_by_email(self, session: AsyncSession, email: str) -> User | None:
        return await self.get_by(session, User.email, email.lower())

    async def create_user(
        self,
        session: AsyncSession,
        *,
        email: str,
        password_hash: str,
        name: str | None = None,
        role: UserRole = UserRole.USER,
    ) -> User:
        user = User(
            email=email.lower(),
            password_hash=password_hash,
            name=name,
            role=role.value,
            is_active=True,
            failed_login_attempts=0,
        )
        return await self.create(session, user)

    async def increment_failed_attempts(
        self,
        session: AsyncSession,
        user: User,
        *,
        max_attempts: int,
        lockout: timedelta,
        now: datetime | None = None,
    ) -> bool:
        """Count a failed login; lock the account once ``max_attempts`` is reached.

        Returns:
            True if this failure locked the account.
        """
        user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
        locked = user.failed_login_attempts >= max_attempts
        if locked:
            user.locked_until = (now or _now()) + lockout
        await session.flush()
        return locked

    async def reset_failed_attempts(
        self,
        session: AsyncSession,
        user: User,
        *,
        now: datetime | None = None,
    ) -> None:
        """Clear the counter and lock after a successful login."""
        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login_at = now or _now()
        await session.flush()


class RefreshTokenRepository(BaseRepository[RefreshToken]):
    """The per-user set of live refresh-token records."""

    __slots__ = ()

    def __init__(self) -> None:
        super().__init__(RefreshToken)

    async def add(self, session: AsyncSession, record: RefreshToken, *, max_per_user: int) -> list[str]:
        """Insert a record and evict the oldest beyond ``max_per_user``.

        Oldest is by ``created_at``, ties broken by insertion order.

        Returns:
            token_ids of the evicted records.
        """
        await self.create(session, record)

        result = await session.execute(
            select(RefreshToken.id, RefreshToken.token_id)
            .where(RefreshToken.user_id == record.user_id)
            .order_by(RefreshToken.created_at.desc(), RefreshToken.id.desc())
            .offset(max_per_user)
        )
        stale = result.all()
        if not stale:
            return []

        await session.execute(delete(RefreshToken).where(RefreshToken.id.in_([row.id for row in stale])))
        evicted = [row.token_id for row in stale]
        self._lazy.debug(lambda: f"Evicted refresh tokens for user {record.user_id}: {evicted}")
        return evicted

    async def get_live(
        self,
        session: AsyncSession,
        user_id: str,
        token_id: str,
        *,
        now: datetime | None = None,
    ) -> RefreshToken | None:
        result = await session.execute(
            select(RefreshToken).where(
                RefreshToken.user_id == user_id,
                RefreshToken.token_id == token_id,
                RefreshToken.expires_at > (now or _now()),
            )
        )
        return result.scalar_one_or_none()

    async def list_live_for_user(
        self,
        session: AsyncSession,
        user_id: str,
        *,
        now: datetime | None = None,
    ) -> Sequence[RefreshToken]:
        result = await session.execute(
            select(RefreshToken)
            .where(RefreshToken.user_id == user_id, RefreshToken.expires_at > (now or _now()))
            .order_by(RefreshToken.created_at, RefreshToken.id)
        )
        return result.scalars().all()

    async def delete_by_token_id(self, session: AsyncSession, token_id: str) -> int:
        result = await session.execute(delete(RefreshToken).where(RefreshToken.token_id == token_id))
        return result.rowcount or 0

    async def delete_for_user(self, session: AsyncSession, user_id: str) -> int:
        result = await session.execute(delete(RefreshToken).where(RefreshToken.user_id == user_id))
        return result.rowcount or 0

    async def purge_expired(self, session: AsyncSession, *, now: datetime | None = None) -> int:
        result = await session.execute(delete(RefreshToken).where(RefreshToken.expires_at <= (now or _now())))
        return result.rowcount or 0

    async def count_active(self, session: AsyncSession, *, now: datetime | None = None) -> int:
        result = await session.execute(
            select(func.count(RefreshToken.id)).where(RefreshToken.expires_at > (now or _now()))
        )
        return result.scalar_one()


class BlacklistRepository(BaseRepository[TokenBlacklist]):
    """Revoked token ids, kept until the token would have expired anyway."""

    __slots__ = ()

    def __init__(self) -> None:
        super().__init__(TokenBlacklist)

    async def exists(self, session: AsyncSession, token_id: str) -> bool:
        result = await session.execute(
            select(TokenBlacklist.id).where(TokenBlacklist.token_id == token_id).limit(1)
        )
        return result.first() is not None

    async def existing_ids(self, session: AsyncSession, token_ids: Iterable[str]) -> set[str]:
        ids = list(token_ids)
        if not ids:
            return set()
        result = await session.execute(select(TokenBlacklist.token_id).where(TokenBlacklist.token_id.in_(ids)))
        return set(result.scalars().all())

    async def purge_expired(self, session: AsyncSession, *, now: datetime | None = None) -> int:
        result = await session.execute(delete(TokenBlacklist).where(TokenBlacklist.expires_at <= (now or _now())))
        return result.rowcount or 0

    async def count(self, session: AsyncSession) -> int:
        result = await session.execute(select(func.count(TokenBlacklist.id)))
        return result.scalar_one()
