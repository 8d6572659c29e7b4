"""Custom exception classes for the application."""

from __future__ import annotations

from typing import Any


class AppException(Exception):
    """Base application exception.

    All custom exceptions should inherit from this class.
    Follows RFC 7807 Problem Details for HTTP APIs.

    Attributes:
        status_code: HTTP status code for the error.
        detail: Human-readable error message.
        type: Error type identifier (used in RFC 7807 problem details).
        title: Short, human-readable summary of the problem type.
        instance: URI reference that identifies the specific occurrence of the problem.
        extra: Additional context-specific information about the error.
        close_code: WebSocket close code used when the error ends a realtime
            handshake, or None when the error is reported in-band.

    Example:
            raise AppException(
            status_code=404,
            detail="Resource not found",
            type="resource-not-found",
            extra={"resource_id": "abc123"},
        )
    """

    close_code: int | None = None

    def __init__(
        self,
        status_code: int,
        detail: str,
        type: str = "about:blank",
        title: str | None = None,
        instance: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self.status_code = status_code
        self.detail = detail
        self.type = type
        self.title = title or self._default_title(status_code)
        self.instance = instance
        self.extra = extra or {}
        super().__init__(detail)

    @property
    def code(self) -> str | None:
        """Machine-readable error code carried in ``extra``."""
        return self.extra.get("code")

    @staticmethod
    def _default_title(status_code: int) -> str:
        titles = {
            400: "Bad Request",
            401: "Unauthorized",
            403: "Forbidden",
            404: "Not Found",
            409: "Conflict",
            422: "Unprocessable Entity",
            423: "Locked",
            429: "Too Many Requests",
            500: "Internal Server Error",
            503: "Service Unavailable",
        }
        return titles.get(status_code, "Error")


class NotFoundException(AppException):
    """Exception raised when a resource is not found."""

    def __init__(
        self,
        detail: str,
        type: str = "not-found",
        instance: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            status_code=404,
            detail=detail,
            type=type,
            title="Not Found",
            instance=instance,
            extra=extra,
        )


class ValidationException(AppException):
    """Exception raised for validation errors."""

    def __init__(
        self,
        detail: str,
        type: str = "validation-error",
        instance: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            status_code=422,
            detail=detail,
            type=type,
            title="Validation Error",
            instance=instance,
            extra=extra,
        )


class UnauthorizedException(AppException):
    """Exception raised for authentication failures."""

    close_code = 4401

    def __init__(
        self,
        detail: str = "Authentication required",
        type: str = "unauthorized",
        instance: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            status_code=401,
            detail=detail,
            type=type,
            title="Unauthorized",
            instance=instance,
            extra=extra,
        )


class ForbiddenException(AppException):
    """Exception raised when the caller lacks permission."""

    def __init__(
        self,
        detail: str = "Insufficient permissions",
        type: str = "forbidden",
        instance: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            status_code=403,
            detail=detail,
            type=type,
            title="Forbidden",
            instance=instance,
            extra=extra,
        )


class ConflictException(AppException):
    """Exception raised when a resource already exists."""

    def __init__(
        self,
        detail: str,
        type: str = "conflict",
        instance: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            status_code=409,
            detail=detail,
            type=type,
            title="Conflict",
            instance=instance,
            extra=extra,
        )


class RateLimitException(AppException):
    """Exception raised when rate limit is exceeded.

    Example:
            raise RateLimitException(
            detail="Too many requests",
            extra={"retry_after": 60, "limit": 100}
        )
    """

    close_code = 4429

    def __init__(
        self,
        detail: str,
        type: str = "rate-limit-exceeded",
        instance: str | None = None,
        extra: dict[str, Any] | None = None,
        *,
        status_code: int = 429,
    ) -> None:
        super().__init__(
            status_code=status_code,
            detail=detail,
            type=type,
            title="Too Many Requests",
            instance=instance,
            extra=extra,
        )


class ServiceUnavailableException(AppException):
    """Exception raised when a backing service cannot be reached."""

    close_code = 1013

    def __init__(
        self,
        detail: str = "Service temporarily unavailable",
        type: str = "service-unavailable",
        instance: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            status_code=503,
            detail=detail,
            type=type,
            title="Service Unavailable",
            instance=instance,
            extra=extra,
        )


# ============================================================================
# Token Ledger Exceptions
# ============================================================================
# Raised by TokenLedger and translated by auth dependencies and the realtime
# gateway. None of them is retried.


class TokenError(UnauthorizedException):
    """Base class for token verification failures."""

    default_code = "INVALID_TOKEN"
    default_detail = "Invalid token"
    default_type = "token-invalid"

    def __init__(
        self,
        detail: str | None = None,
        token_id: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        final_extra: dict[str, Any] = {"code": self.default_code}
        if token_id:
            final_extra["token_id"] = token_id
        if extra:
            final_extra.update(extra)
        super().__init__(
            detail=detail or self.default_detail,
            type=self.default_type,
            extra=final_extra,
        )


class TokenExpired(TokenError):
    """The token's signed expiry has passed."""

    default_code = "TOKEN_EXPIRED"
    default_detail = "Token has expired"
    default_type = "token-expired"


class TokenRevoked(TokenError):
    """The token is present in the blacklist."""

    default_code = "TOKEN_REVOKED"
    default_detail = "Token has been revoked"
    default_type = "token-revoked"


class TokenInvalid(TokenError):
    """Signature, format, claim or refresh-record mismatch."""


class AccountLocked(AppException):
    """The account is inside its failed-login lockout window."""

    close_code = 4423

    def __init__(
        self,
        detail: str = "Account is temporarily locked",
        locked_until: str | None = None,
    ) -> None:
        extra: dict[str, Any] = {"code": "ACCOUNT_LOCKED"}
        if locked_until:
            extra["locked_until"] = locked_until
        super().__init__(
            status_code=423,
            detail=detail,
            type="account-locked",
            title="Locked",
            extra=extra,
        )


class UserNotFound(NotFoundException):
    """The token subject does not exist in the user store."""

    def __init__(self, user_id: str | None = None) -> None:
        super().__init__(
            detail="User not found",
            type="user-not-found",
            extra={"code": "USER_NOT_FOUND", **({"user_id": user_id} if user_id else {})},
        )


class InvalidCredentials(UnauthorizedException):
    """Email/password pair did not match."""

    def __init__(self, detail: str = "Invalid credentials") -> None:
        super().__init__(
            detail=detail,
            type="invalid-credentials",
            extra={"code": "INVALID_CREDENTIALS"},
        )


class StoreFailure(ServiceUnavailableException):
    """The token store could not be read or written."""

    def __init__(self, detail: str = "Token store unavailable", operation: str | None = None) -> None:
        super().__init__(
            detail=detail,
            type="store-failure",
            extra={"code": "STORE_FAILURE", **({"operation": operation} if operation else {})},
        )


# ============================================================================
# Realtime Gateway Exceptions
# ============================================================================


class AuthFailure(UnauthorizedException):
    """Realtime handshake rejected: missing, malformed, expired or revoked token."""

    def __init__(self, detail: str = "Authentication failed", code: str = "INVALID_TOKEN") -> None:
        super().__init__(detail=detail, type="auth-failure", extra={"code": code})


class RateLimited(RateLimitException):
    """A handshake or client-initiated operation exceeded its rate limit."""

    def __init__(self, detail: str = "Rate limit exceeded", retry_after: int | None = None) -> None:
        extra: dict[str, Any] = {"code": "RATE_LIMITED"}
        if retry_after is not None:
            extra["retry_after"] = retry_after
        super().__init__(detail=detail, extra=extra)


class ValidationFailure(ValidationException):
    """A client control message is malformed; reported in-band."""

    close_code = None

    def __init__(self, detail: str, field: str | None = None) -> None:
        super().__init__(
            detail=detail,
            extra={"code": "VALIDATION_ERROR", **({"field": field} if field else {})},
        )


class DeliveryFailure(AppException):
    """A send to one connection failed; the connection is dropped, the publisher never sees it."""

    def __init__(self, connection_id: str, reason: str) -> None:
        self.connection_id = connection_id
        self.reason = reason
        super().__init__(
            status_code=500,
            detail=f"Delivery to connection {connection_id} failed: {reason}",
            type="delivery-failure",
            extra={"code": "DELIVERY_FAILURE", "connection_id": connection_id},
        )


class ConnectionLimitExceeded(ServiceUnavailableException):
    """The instance or the user already holds the maximum number of connections."""

    def __init__(self, detail: str = "Maximum connections reached") -> None:
        super().__init__(detail=detail, type="connection-limit", extra={"code": "CONNECTION_LIMIT"})


__all__ = [
    "AccountLocked",
    "AppException",
    "AuthFailure",
    "ConflictException",
    "ConnectionLimitExceeded",
    "DeliveryFailure",
    "ForbiddenException",
    "InvalidCredentials",
    "NotFoundException",
    "RateLimitException",
    "RateLimited",
    "ServiceUnavailableException",
    "StoreFailure",
    "TokenError",
    "TokenExpired",
    "TokenInvalid",
    "TokenRevoked",
    "UnauthorizedException",
    "UserNotFound",
    "ValidationException",
    "ValidationFailure",
]
