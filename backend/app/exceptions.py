"""
Keystone Backend — Error Taxonomy
=================================

What:  A closed set of failure kinds, each with a fixed HTTP status and a stable
       machine-readable code, plus the exception type that carries them.
Why:   Clients switch on `error.code`; support correlates on `requestId`. The
       global handler (app.middleware.error_handler) switches on `kind`, so
       adding a subclass can never change how an error is rendered.
How:   `ErrorKind` is an Enum whose members carry (status, code, default message).
       `AppError` carries a kind; the subclasses below only pin the kind and
       offer friendlier constructors.

Taxonomy:
    ErrorKind.VALIDATION           → 400 VALIDATION_ERROR
    ErrorKind.UNAUTHORIZED         → 401 UNAUTHORIZED
    ErrorKind.FORBIDDEN            → 403 FORBIDDEN
    ErrorKind.NOT_FOUND            → 404 NOT_FOUND
    ErrorKind.CONFLICT             → 409 CONFLICT
    ErrorKind.RATE_LIMITED         → 429 RATE_LIMIT_EXCEEDED
    ErrorKind.INTERNAL             → 500 INTERNAL_ERROR
    ErrorKind.BAD_GATEWAY          → 502 BAD_GATEWAY
    ErrorKind.SERVICE_UNAVAILABLE  → 503 SERVICE_UNAVAILABLE
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(Enum):
    VALIDATION = (400, "VALIDATION_ERROR", "Validation failed")
    UNAUTHORIZED = (401, "UNAUTHORIZED", "Unauthorized")
    FORBIDDEN = (403, "FORBIDDEN", "Forbidden")
    NOT_FOUND = (404, "NOT_FOUND", "Resource not found")
    CONFLICT = (409, "CONFLICT", "Resource already exists")
    RATE_LIMITED = (429, "RATE_LIMIT_EXCEEDED", "Too many requests, please try again later")
    INTERNAL = (500, "INTERNAL_ERROR", "Internal server error")
    BAD_GATEWAY = (502, "BAD_GATEWAY", "Bad gateway")
    SERVICE_UNAVAILABLE = (503, "SERVICE_UNAVAILABLE", "Service temporarily unavailable")

    def __init__(self, status_code: int, code: str, default_message: str):
        self.status_code = status_code
        self.code = code
        self.default_message = default_message

    @property
    def is_server_error(self) -> bool:
        return self.status_code >= 500

    @classmethod
    def from_status(cls, status_code: int) -> "ErrorKind":
        for kind in cls:
            if kind.status_code == status_code:
                return kind
        return cls.INTERNAL


class AppError(Exception):
    """
    Base exception for every failure the API reports on purpose.

    Attributes:
        kind:     The taxonomy entry; decides status and code.
        message:  Client-safe description.
        details:  Optional structured payload returned to the client
                  (field violations, retry hints).
        context:  Debug info that is logged but never returned.
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        kind: Optional[ErrorKind] = None,
        details: Any = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        if kind is not None:
            self.kind = kind
        self.message = message or self.kind.default_message
        self.details = details
        self.context = context or {}
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return self.kind.status_code

    @property
    def code(self) -> str:
        return self.kind.code

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(kind={self.kind.name}, message={self.message!r})>"


class ValidationError(AppError):
    """
    Client input failed validation.

    `details` is a list of `{field, message, code}` entries, one per violation.
    A single-field shortcut is available through `field=`.
    """

    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[List[Dict[str, Any]]] = None,
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        if details is None and field:
            details = [{"field": field, "message": message or self.kind.default_message, "code": "invalid"}]
        super().__init__(message, details=details, context=context)
        self.field = field


class UnauthorizedError(AppError):
    kind = ErrorKind.UNAUTHORIZED


class ForbiddenError(AppError):
    kind = ErrorKind.FORBIDDEN


class NotFoundError(AppError):
    """Raised when a resource does not exist (or is soft-deleted)."""

    kind = ErrorKind.NOT_FOUND

    def __init__(
        self,
        message: Optional[str] = None,
        resource: Optional[str] = None,
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if resource:
            ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        if message is None and resource:
            message = f"{resource.capitalize()} not found"
        super().__init__(message, context=ctx)


class ConflictError(AppError):
    kind = ErrorKind.CONFLICT


class RateLimitExceededError(AppError):
    """
    Raised when a caller exceeds a limiter's budget.

    `retry_after` (seconds) is echoed in details and in the Retry-After header.
    """

    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: Optional[str] = None,
        retry_after: int = 60,
        limit: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        details: Dict[str, Any] = {"retryAfter": retry_after}
        if limit is not None:
            details["limit"] = limit
        super().__init__(message, details=details, context=context)
        self.retry_after = retry_after
        self.limit = limit


class InternalError(AppError):
    kind = ErrorKind.INTERNAL


class BadGatewayError(AppError):
    """An upstream provider (payments, storage, email) failed."""

    kind = ErrorKind.BAD_GATEWAY


class ServiceUnavailableError(AppError):
    kind = ErrorKind.SERVICE_UNAVAILABLE


def error_from_status(status_code: int, message: Optional[str] = None) -> AppError:
    """Build an AppError for an arbitrary HTTP status (unknown statuses become INTERNAL)."""
    return AppError(message, kind=ErrorKind.from_status(status_code))
