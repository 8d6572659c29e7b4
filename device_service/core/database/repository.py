"""Minimal generic repository for SQLAlchemy models.

Session is always explicit, so several repositories can share one
transaction (token rotation touches three tables in a single commit).

Example:
    class UserRepository(BaseRepository[User]):
        async def get_by_email(self, session: AsyncSession, email: str) -> User | None:
            return await self.get_by(session, User.email, email)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from device_service.infra.logging import get_lazy_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.orm import InstrumentedAttribute


class BaseRepository[T]:
    """Thin CRUD layer: get, get_by, create, delete.

    For anything else, use the session directly.
    """

    __slots__ = ("model", "_logger", "_lazy")

    def __init__(self, model: type[T]) -> None:
        self.model = model
        self._logger = logging.getLogger(f"repository.{model.__name__}")
        self._lazy = get_lazy_logger(f"repository.{model.__name__}")

    async def get(self, session: AsyncSession, id: Any) -> T | None:  # noqa: A002
        """Get entity by primary key."""
        instance = await session.get(self.model, id)
        self._lazy.debug(
            lambda: f"db.get: {self.model.__name__}({id}) -> {'found' if instance else 'not found'}"
        )
        return instance

    async def get_by(
        self,
        session: AsyncSession,
        attr: InstrumentedAttribute[Any],
        value: Any,
    ) -> T | None:
        """Get the first entity whose ``attr`` equals ``value``."""
        result = await session.execute(select(self.model).where(attr == value))
        instance = result.scalars().first()
        self._lazy.debug(
            lambda: f"db.get_by: {self.model.__name__}.{attr.key}={value!r} -> {'found' if instance else 'not found'}"
        )
        return instance

    async def create(self, session: AsyncSession, instance: T) -> T:
        """Add and flush so generated keys and constraint violations surface now."""
        session.add(instance)
        await session.flush()
        self._lazy.debug(lambda: f"db.create: {self.model.__name__} flushed")
        return instance

    async def delete(self, session: AsyncSession, instance: T) -> None:
        """Delete an entity and flush."""
        await session.delete(instance)
        await session.flush()
