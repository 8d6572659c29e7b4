"""Base schema classes for API models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class CustomBase(BaseModel):
    """Base model with common configuration for all schemas.

    Example:
        class UserResponse(CustomBase):
            id: str
            email: str
            created_at: datetime
    """

    model_config = ConfigDict(
        # Allow creation from ORM models (SQLAlchemy)
        from_attributes=True,
        use_enum_values=True,
        populate_by_name=True,
        # Silently drop unexpected fields
        extra="ignore",
        str_strip_whitespace=True,
    )
