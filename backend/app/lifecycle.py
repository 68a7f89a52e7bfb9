"""
Keystone Backend — Application Resources & Lifecycle
====================================================

What:  `AppResources` owns every process-wide handle: the database, the
       optional Redis connection, the rate-limit store and each configured
       integration.
Why:   Nothing connects at import time. Tests build the app, swap in their own
       resources and never need a reachable database or broker.
How:   Built from `Settings`; integrations are only constructed when their
       feature flag is on. The FastAPI lifespan calls `startup()` and
       `shutdown()` and keeps the object on `app.state.resources`, where the
       dependency functions in app.dependencies find it.

Startup:
    1. Database connect (bounded retry, see app.database); failure is fatal
    2. Redis connect when configured (bounded retry); failure degrades to the
       in-memory rate-limit store and turns jobs and realtime off
    3. Sentry init when configured
    4. Realtime fan-out listener

Shutdown (reverse order, each step logged, errors logged and swallowed):
    realtime listener → e-mail client → Redis → database engine
"""

import logging
import time
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration

from app import __version__
from app.cache import RedisCache
from app.config import FeatureFlags, Settings
from app.database import Database
from app.jobs.queue import JobQueue
from app.middleware.rate_limit import InMemoryRateLimitStore, RateLimitStore, RedisRateLimitStore
from app.services.auth_service import TokenVerifier
from app.services.email_service import EmailService
from app.services.payment_service import PaymentService
from app.services.realtime import RealtimeHub
from app.services.storage_service import StorageService

logger = logging.getLogger(__name__)


class AppResources:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.features: FeatureFlags = settings.features
        self.started_at = time.time()

        self.database = Database(settings)
        self.redis: Optional[RedisCache] = None
        if self.features.redis:
            self.redis = RedisCache(
                settings.redis_url,
                connect_timeout=settings.redis_connect_timeout,
                retries=settings.redis_connect_retries,
            )
        self.rate_limit_store: RateLimitStore = InMemoryRateLimitStore()

        self.token_verifier = TokenVerifier(settings) if self.features.auth else None
        self.payments = PaymentService(settings) if self.features.stripe else None
        self.storage = StorageService(settings) if self.features.s3 else None
        self.email = EmailService(settings) if self.features.sendgrid else None
        self.jobs: Optional[JobQueue] = None
        self.realtime = RealtimeHub()

    @property
    def uptime(self) -> float:
        return time.time() - self.started_at

    async def startup(self) -> None:
        logger.info("Enabled features: %s", ", ".join(self.features.enabled()) or "none")

        await self.database.connect()

        if self.redis is not None:
            try:
                await self.redis.connect()
            except Exception as e:
                logger.warning(
                    "Redis unavailable (%s); using in-memory rate limiting, jobs and realtime fan-out disabled",
                    e,
                )
                self.redis = None
            else:
                self.rate_limit_store = RedisRateLimitStore(self.redis.client)
                self.jobs = JobQueue()
                self.realtime = RealtimeHub(self.redis.client)

        if self.features.sentry:
            sentry_sdk.init(
                dsn=self.settings.sentry_dsn,
                environment=self.settings.environment,
                release=f"keystone@{__version__}",
                integrations=[FastApiIntegration(), CeleryIntegration()],
                traces_sample_rate=self.settings.sentry_traces_sample_rate,
                send_default_pii=False,
            )
            logger.info("Sentry initialised")

        await self.realtime.start()

    async def shutdown(self) -> None:
        steps = [
            ("realtime listener", self.realtime.stop),
            ("e-mail client", self.email.close if self.email else None),
            ("redis", self.redis.close if self.redis else None),
            ("database", self.database.disconnect),
        ]
        for name, step in steps:
            if step is None:
                continue
            try:
                await step()
                logger.info("Shutdown: %s closed", name)
            except Exception as e:
                logger.error("Shutdown: closing %s failed: %s", name, e)
