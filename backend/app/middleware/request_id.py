"""
Keystone Backend — Request ID Middleware
========================================

What:  Assigns every request a correlation id, returns it as X-Request-ID and
       makes it available to every log record emitted while handling it.
Why:   Support asks for the requestId shown in an error body and finds every
       log line and audit entry for that request.
How:   A ContextVar holds the id for the current task; `RequestIdFilter`
       copies it onto log records so the format string can use %(request_id)s.

Client-supplied ids (X-Request-ID) are honoured when they look sane, so a
frontend can correlate its own logs with ours.
"""

import logging
import re
import uuid
from contextvars import ContextVar
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import HTTPConnection, Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"
_VALID_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")

request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id() -> str:
    return request_id_var.get()


def client_ip(conn: HTTPConnection) -> Optional[str]:
    """First hop of X-Forwarded-For when present, else the socket peer."""
    forwarded = conn.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return conn.client.host if conn.client else None


class RequestIdFilter(logging.Filter):
    """Adds `request_id` to every record ("-" outside a request)."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = request_id_var.get() or "-"
        return True


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        incoming = request.headers.get(REQUEST_ID_HEADER, "")
        rid = incoming if _VALID_ID.match(incoming) else uuid.uuid4().hex
        token = request_id_var.set(rid)
        request.state.request_id = rid
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers[REQUEST_ID_HEADER] = rid
        return response
