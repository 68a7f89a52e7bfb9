"""
Keystone Backend — FastAPI Application Factory
==============================================

What:  Creates and configures the FastAPI application instance.
How:   create_app() wires middleware, exception handlers and routers; the
       lifespan builds AppResources, connects it and stores it on
       `app.state.resources`.
Who:   uvicorn app.main:app

Middleware (outermost first; Starlette runs the last added first):
    SecurityHeaders → RequestID → RequestLogging → RateLimitHeaders → GZip → CORS

Routers:
    /health, /metrics, /api      health
    /api/examples                examples      (global /api limiter)
    /api/payments                payments      (global /api limiter)
    /api/uploads                 uploads       (global /api limiter)
    /api/webhooks                webhooks      (global /api limiter)
    /ws                          realtime
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from app import __version__
from app.config import Settings, settings as default_settings
from app.lifecycle import AppResources
from app.middleware.error_handler import register_exception_handlers
from app.middleware.logging import RequestLoggingMiddleware, setup_logging
from app.middleware.rate_limit import RateLimitHeadersMiddleware, api_limiter
from app.middleware.request_id import REQUEST_ID_HEADER, RequestIDMiddleware
from app.middleware.security_headers import SecurityHeadersMiddleware
from app.routes import examples, health, payments, realtime, uploads, webhooks

logger = logging.getLogger(__name__)

EXPOSED_HEADERS = [
    REQUEST_ID_HEADER,
    "Retry-After",
    "X-RateLimit-Limit",
    "X-RateLimit-Remaining",
    "X-RateLimit-Reset",
]


def _lifespan(config: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        setup_logging(config.log_level)
        logger.info("=" * 60)
        logger.info("%s %s starting (%s)", config.app_name, __version__, config.environment)

        # Outside development a bad configuration must not serve traffic
        try:
            config.validate_required_for_production()
        except ValueError as e:
            logger.error("%s", e)
            if not config.is_development:
                raise

        resources = AppResources(config)
        await resources.startup()
        app.state.resources = resources

        logger.info("Server ready at http://%s:%d", config.backend_host, config.backend_port)
        logger.info("=" * 60)

        yield

        logger.info("Shutting down...")
        await resources.shutdown()
        logger.info("Shutdown complete.")

    return lifespan


def create_app(config: Optional[Settings] = None) -> FastAPI:
    """
    Build the application.

    Tests pass their own Settings and set `app.state.resources` themselves;
    the lifespan only runs under a real server.
    """
    config = config or default_settings

    app = FastAPI(
        title=config.app_name,
        description="Production-ready SaaS backend: examples CRUD, auth, billing, uploads, jobs and realtime.",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=_lifespan(config),
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins_list,
        allow_origin_regex=config.cors_origin_regex,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=EXPOSED_HEADERS,
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(RateLimitHeadersMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, hsts=not config.is_development)

    register_exception_handlers(app, config)

    api_limit = [Depends(api_limiter)]
    app.include_router(health.router)
    app.include_router(examples.router, dependencies=api_limit)
    app.include_router(payments.router, dependencies=api_limit)
    app.include_router(uploads.router, dependencies=api_limit)
    app.include_router(webhooks.router, dependencies=api_limit)
    app.include_router(realtime.router)

    return app


app = create_app()
