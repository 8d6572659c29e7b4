"""Database base classes, mixins and column types."""

from device_service.core.database.base import (
    NAMING_CONVENTION,
    Base,
    IntegerPKMixin,
    StringUUIDPKMixin,
    TimestampMixin,
)
from device_service.core.database.repository import BaseRepository
from device_service.core.database.types import UTCDateTime

__all__ = [
    "NAMING_CONVENTION",
    "Base",
    "BaseRepository",
    "IntegerPKMixin",
    "StringUUIDPKMixin",
    "TimestampMixin",
    "UTCDateTime",
]
