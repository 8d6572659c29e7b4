"""Base database model classes with composable mixins.

Example:
    class RefreshToken(Base, IntegerPKMixin, TimestampMixin):
        __tablename__ = "refresh_tokens"
        token_id: Mapped[str] = mapped_column(String(64), unique=True)
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import MetaData, String
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column
from sqlalchemy.sql import func

from device_service.core.database.types import UTCDateTime

# Predictable constraint names; the blacklist race relies on the uq_ name
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Declarative base with naming convention and automatic table names."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)

    @declared_attr.directive
    def __tablename__(cls) -> str:
        return cls.__name__.lower()


# ============================================================================
# Primary Key Mixins
# ============================================================================


class IntegerPKMixin:
    """Integer auto-increment primary key."""

    __allow_unmapped__ = True

    id: Mapped[int] = mapped_column(
        primary_key=True,
        autoincrement=True,
        comment="Auto-incrementing integer primary key",
    )


class StringUUIDPKMixin:
    """UUID v4 primary key stored as its 36-character string form.

    Token subjects are strings, so keeping the key as text avoids a
    conversion at every JWT boundary.
    """

    __allow_unmapped__ = True

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="UUID v4 primary key",
    )


# ============================================================================
# Timestamp Mixins
# ============================================================================


class TimestampMixin:
    """Timestamp tracking for create and update operations.

    Python-side defaults keep microsecond precision, which refresh-token
    eviction order depends on; server defaults cover direct SQL inserts.
    """

    __allow_unmapped__ = True

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=lambda: datetime.now(UTC),
        server_default=func.now(),
        nullable=False,
        comment="Timestamp of record creation",
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=lambda: datetime.now(UTC),
        server_default=func.now(),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
        comment="Timestamp of last update",
    )
