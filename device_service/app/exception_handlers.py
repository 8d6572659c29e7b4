"""Global exception handlers for FastAPI application."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from device_service.core.exceptions import AppException
from device_service.core.schemas.error import (
    ProblemDetail,
    ValidationErrorDetail,
    ValidationProblemDetail,
)

logger = logging.getLogger(__name__)

PROBLEM_JSON = "application/problem+json"


def _get_request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _problem_response(
    request: Request,
    problem: ProblemDetail,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = problem.to_response_body()
    request_id = _get_request_id(request)
    if request_id:
        body["request_id"] = request_id
    return JSONResponse(
        status_code=problem.status,
        content=body,
        headers=headers or None,
        media_type=PROBLEM_JSON,
    )


def _validation_errors(errors: list[dict[str, Any]]) -> list[ValidationErrorDetail]:
    return [
        ValidationErrorDetail(
            loc=[part if isinstance(part, int) else str(part) for part in error["loc"]],
            msg=error["msg"],
            type=error["type"],
        )
        for error in errors
    ]


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Convert an AppException into an RFC 7807 Problem Details response.

    The exception's ``extra`` members (``code``, ``retry_after``,
    ``locked_until``...) are serialized as problem extensions. A
    ``retry_after`` extension is also sent as a ``Retry-After`` header.
    """
    logger.warning(
        "Application exception occurred",
        extra={
            "request_id": _get_request_id(request),
            "path": request.url.path,
            "method": request.method,
            "exception_type": exc.type,
            "status_code": exc.status_code,
            "code": exc.code,
            "detail": exc.detail,
        },
    )

    problem = ProblemDetail(
        type=exc.type,
        title=exc.title,
        status=exc.status_code,
        detail=exc.detail,
        instance=exc.instance or request.url.path,
        **exc.extra,
    )

    headers: dict[str, str] = {}
    retry_after = exc.extra.get("retry_after")
    if retry_after is not None:
        headers["Retry-After"] = str(retry_after)
    if exc.status_code == status.HTTP_401_UNAUTHORIZED:
        headers["WWW-Authenticate"] = "Bearer"

    return _problem_response(request, problem, headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle FastAPI request validation errors with field-level details."""
    errors = _validation_errors(list(exc.errors()))

    logger.warning(
        "Request validation failed",
        extra={
            "request_id": _get_request_id(request),
            "path": request.url.path,
            "method": request.method,
            "error_count": len(errors),
        },
    )

    problem = ValidationProblemDetail(
        type="validation-error",
        title="Validation Error",
        status=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=f"Request validation failed for {len(errors)} field(s)",
        instance=request.url.path,
        errors=errors,
        code="VALIDATION_ERROR",
    )
    return _problem_response(request, problem)


async def pydantic_validation_exception_handler(
    request: Request, exc: PydanticValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors raised outside request parsing."""
    errors = _validation_errors(list(exc.errors()))

    logger.warning(
        "Pydantic validation failed",
        extra={
            "request_id": _get_request_id(request),
            "path": request.url.path,
            "error_count": len(errors),
        },
    )

    problem = ValidationProblemDetail(
        type="validation-error",
        title="Validation Error",
        status=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=f"Data validation failed for {len(errors)} field(s)",
        instance=request.url.path,
        errors=errors,
        code="VALIDATION_ERROR",
    )
    return _problem_response(request, problem)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all: log the traceback, return a generic 500.

    Internal details are never exposed to the client.
    """
    logger.exception(
        "Unexpected exception occurred",
        extra={
            "request_id": _get_request_id(request),
            "path": request.url.path,
            "method": request.method,
            "exception_type": type(exc).__name__,
        },
    )

    problem = ProblemDetail(
        type="internal-error",
        title="Internal Server Error",
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="An unexpected error occurred while processing your request",
        instance=request.url.path,
    )
    return _problem_response(request, problem)


def configure_exception_handlers(app: FastAPI) -> None:
    """Register the RFC 7807 exception handlers.

    Example:
        app = FastAPI()
        configure_exception_handlers(app)
    """
    app.add_exception_handler(AppException, app_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(PydanticValidationError, pydantic_validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)

    logger.info("Exception handlers configured")
