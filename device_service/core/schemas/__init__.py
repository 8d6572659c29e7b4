"""Shared API schemas."""

from device_service.core.schemas.base import CustomBase
from device_service.core.schemas.error import ProblemDetail, ValidationErrorDetail, ValidationProblemDetail

__all__ = ["CustomBase", "ProblemDetail", "ValidationErrorDetail", "ValidationProblemDetail"]
