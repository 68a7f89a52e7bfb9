"""
Keystone Backend — Logging Setup & Access Log Middleware
========================================================

What:  `setup_logging()` configures the root logger once per process;
       `RequestLoggingMiddleware` writes one access line per request.
How:   stdlib logging to stdout (containers collect stdout). Every record goes
       through RequestIdFilter so the format can include the correlation id.

Access line:
    GET /api/examples 200 12.3ms [3f2a...] from 203.0.113.7
Level by status: 5xx ERROR, 4xx WARNING, everything else INFO.
Probes (/health, /metrics, /favicon.ico) are not logged.
"""

import logging
import sys
import time
from typing import Any, Mapping

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.middleware.request_id import RequestIdFilter, client_ip, request_id_var

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s"

NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "botocore")

SKIP_PATHS = {"/health", "/metrics", "/favicon.ico"}

SENSITIVE_KEYS = ("password", "token", "authorization", "api_key", "apikey", "secret", "credit_card", "ssn")
REDACTED = "[REDACTED]"

logger = logging.getLogger("keystone.access")


def setup_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIdFilter())
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[handler],
        force=True,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def redact(value: Any) -> Any:
    """Recursively mask values whose key looks like a credential."""
    if isinstance(value, Mapping):
        return {
            k: REDACTED if any(s in str(k).lower() for s in SENSITIVE_KEYS) else redact(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in SKIP_PATHS:
            return await call_next(request)

        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000

        status = response.status_code
        if status >= 500:
            level = logging.ERROR
        elif status >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO

        rid = getattr(request.state, "request_id", "") or request_id_var.get()
        ip = client_ip(request) or "unknown"
        logger.log(
            level,
            "%s %s %d %.1fms [%s] from %s",
            request.method,
            path,
            status,
            duration_ms,
            rid,
            ip,
            extra={
                "request_id": rid,
                "method": request.method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "client_ip": ip,
            },
        )
        return response
