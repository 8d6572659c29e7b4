"""Service layer base classes."""

from device_service.core.services.base import BaseService

__all__ = ["BaseService"]
