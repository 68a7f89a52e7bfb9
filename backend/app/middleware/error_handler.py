"""
Keystone Backend — Global Exception Handlers
============================================

What:  Maps every failure to the error envelope
           {"success": false, "error": {"code", "message", "details"?, "requestId"?, "stack"?}}
Why:   Route handlers never build error responses; they raise. Clients get a
       stable `code` to switch on and a `requestId` to quote to support.
How:   `register_exception_handlers(app, settings)` installs one handler per
       exception family. AppError rendering switches on `exc.kind`, never on
       the exception class.

Handler table:
    AppError                    → its kind (RATE_LIMITED adds Retry-After)
    RequestValidationError      → VALIDATION, one detail per violation
    pydantic ValidationError    → VALIDATION
    IntegrityError (unique)     → CONFLICT "Resource already exists"
    other SQLAlchemyError       → INTERNAL "Database error"
    Starlette HTTPException     → kind for its status (unknown routes: NOT_FOUND)
    Exception                   → INTERNAL; real message only in development

Logging:
    5xx at ERROR with traceback (and to Sentry when enabled); 4xx at WARNING.
    Each line carries request id, user id, method, path, query and, for
    validation failures, the redacted body.
    Development responses also carry `stack`.
"""

import logging
import traceback
from typing import Any, Dict, Optional

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.config import Settings
from app.database import is_unique_violation
from app.exceptions import AppError, ErrorKind, error_from_status
from app.middleware.logging import redact
from app.middleware.request_id import REQUEST_ID_HEADER, request_id_var
from app.validation import format_validation_errors

logger = logging.getLogger(__name__)

UNEXPECTED_MESSAGE = "An unexpected error occurred"


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request_id_var.get()


def _user_id(request: Request) -> Optional[str]:
    user = getattr(request.state, "user", None)
    return str(user.id) if user is not None else None


def error_body(
    kind: ErrorKind,
    message: str,
    request_id: Optional[str] = None,
    details: Any = None,
    stack: Optional[str] = None,
) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": kind.code, "message": message}
    if details is not None:
        error["details"] = details
    if request_id:
        error["requestId"] = request_id
    if stack:
        error["stack"] = stack
    return {"success": False, "error": error}


class ErrorRenderer:
    """Builds, logs and reports error responses for one application."""

    def __init__(self, settings: Settings):
        self.development = settings.is_development
        self.report_to_sentry = settings.features.sentry

    def log(self, request: Request, kind: ErrorKind, exc: BaseException, body: Any = None) -> None:
        context = {
            "request_id": _request_id(request),
            "user_id": _user_id(request),
            "method": request.method,
            "path": request.url.path,
            "query": redact(dict(request.query_params)),
        }
        if body is not None:
            context["body"] = redact(body)

        if kind.is_server_error:
            logger.error("%s %s failed: %s | %s", request.method, request.url.path, exc, context, exc_info=exc)
            if self.report_to_sentry:
                with sentry_sdk.new_scope() as scope:
                    scope.set_tag("request_id", context["request_id"])
                    scope.set_tag("path", context["path"])
                    scope.set_tag("method", request.method)
                    if context["user_id"]:
                        scope.set_user({"id": context["user_id"]})
                    sentry_sdk.capture_exception(exc)
        else:
            logger.warning("%s %s → %s: %s | %s", request.method, request.url.path, kind.code, exc, context)

    def render(
        self,
        request: Request,
        kind: ErrorKind,
        message: str,
        exc: BaseException,
        details: Any = None,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
    ) -> JSONResponse:
        self.log(request, kind, exc, body)
        rid = _request_id(request)
        stack = None
        if self.development:
            stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        response_headers = dict(headers or {})
        if rid:
            response_headers[REQUEST_ID_HEADER] = rid
        return JSONResponse(
            status_code=kind.status_code,
            content=error_body(kind, message, rid, details, stack),
            headers=response_headers,
        )


def register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    renderer = ErrorRenderer(settings)

    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        headers = None
        if exc.kind is ErrorKind.RATE_LIMITED:
            headers = {"Retry-After": str(getattr(exc, "retry_after", 60))}
        if exc.context:
            logger.debug("Error context: %s", redact(exc.context))
        return renderer.render(request, exc.kind, exc.message, exc, exc.details, headers)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = format_validation_errors(exc.errors())
        return renderer.render(
            request,
            ErrorKind.VALIDATION,
            ErrorKind.VALIDATION.default_message,
            exc,
            details,
            body=getattr(exc, "body", None),
        )

    @app.exception_handler(PydanticValidationError)
    async def handle_pydantic_validation(request: Request, exc: PydanticValidationError):
        details = format_validation_errors(exc.errors())
        return renderer.render(request, ErrorKind.VALIDATION, ErrorKind.VALIDATION.default_message, exc, details)

    @app.exception_handler(SQLAlchemyError)
    async def handle_database_error(request: Request, exc: SQLAlchemyError):
        if isinstance(exc, IntegrityError) and is_unique_violation(exc):
            return renderer.render(request, ErrorKind.CONFLICT, ErrorKind.CONFLICT.default_message, exc)
        return renderer.render(request, ErrorKind.INTERNAL, "Database error", exc)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404 and exc.detail == "Not Found":
            message = f"Route {request.method} {request.url.path} not found"
        elif isinstance(exc.detail, str):
            message = exc.detail
        else:
            message = None
        error = error_from_status(exc.status_code, message)
        return renderer.render(request, error.kind, error.message, exc, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        message = (str(exc) or UNEXPECTED_MESSAGE) if renderer.development else UNEXPECTED_MESSAGE
        return renderer.render(request, ErrorKind.INTERNAL, message, exc)
