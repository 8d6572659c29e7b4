"""RFC 7807 Problem Details schema for error responses."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ProblemDetail(BaseModel):
    """RFC 7807 Problem Details for HTTP APIs.

    Extension members (``code``, ``retry_after``, ``locked_until``...) are
    accepted as extra fields and serialized alongside the standard ones.

    See: https://datatracker.ietf.org/doc/html/rfc7807
    """

    type: str = Field(default="about:blank", description="URI reference identifying the problem type")
    title: str = Field(description="Short, human-readable summary of the problem")
    status: int = Field(ge=100, le=599, description="HTTP status code")
    detail: str | None = Field(default=None, description="Explanation specific to this occurrence")
    instance: str | None = Field(default=None, description="URI reference identifying the occurrence")

    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "type": "token-revoked",
                "title": "Unauthorized",
                "status": 401,
                "detail": "Token has been revoked",
                "instance": "/api/v1/auth/refresh",
                "code": "TOKEN_REVOKED",
            }
        },
    )

    def to_response_body(self) -> dict[str, Any]:
        """Serialize without unset optional members."""
        return self.model_dump(exclude_none=True)


class ValidationErrorDetail(BaseModel):
    """One field-level validation problem."""

    loc: list[str | int]
    msg: str
    type: str


class ValidationProblemDetail(ProblemDetail):
    """Problem detail carrying request validation errors."""

    errors: list[ValidationErrorDetail] = Field(default_factory=list)
