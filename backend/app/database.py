"""
Keystone Backend — Database Handle & Session Management
=======================================================

What:  Declarative base, the `Database` handle (engine + session factory with an
       explicit connect/disconnect lifecycle) and the per-request session dependency.
Why:   The engine is owned by `AppResources` instead of being created at import
       time, so tests and scripts can build the app without a reachable database.
How:   `Database.connect()` creates the async engine and probes it with
       `SELECT 1` under a bounded tenacity retry (exponential backoff, connect
       timeout). `get_db_session` opens one session per request, commits when the
       handler succeeds and rolls back otherwise.

Connection Pooling:
    pool_size / max_overflow from settings, pool_pre_ping to drop stale
    connections, pool_recycle=3600 to avoid long-lived sockets.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.config import Settings
from app.exceptions import ServiceUnavailableError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


UNIQUE_VIOLATION = "23505"


def is_unique_violation(exc: IntegrityError) -> bool:
    """True when the driver reports SQLSTATE 23505 (unique_violation)."""
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code:
        return code == UNIQUE_VIOLATION
    return "unique" in str(orig or exc).lower()


# ── Base Model ────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    """Base class for all ORM models; Alembic reads `Base.metadata`."""
    pass


class TimestampMixin:
    """created_at / updated_at columns shared by mutable tables."""

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


# ── Database Handle ───────────────────────────────────────────────────────
class Database:
    """
    Owns the async engine and session factory for one process.

    Lifecycle:
        db = Database(settings)
        await db.connect()      # retries, then raises if still unreachable
        ...
        await db.disconnect()
    """

    def __init__(self, settings: Settings):
        self._settings = settings
        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def is_connected(self) -> bool:
        return self.engine is not None

    def _create_engine(self) -> AsyncEngine:
        s = self._settings
        options = {
            "pool_pre_ping": s.db_pool_pre_ping,
            "pool_recycle": 3600,
            "echo": s.log_level == "DEBUG",
        }
        if s.database_url.startswith("postgresql"):
            options.update(
                pool_size=s.db_pool_size,
                max_overflow=s.db_max_overflow,
                # asyncpg's connect timeout, in seconds
                connect_args={"timeout": s.db_connect_timeout},
            )
        return create_async_engine(s.database_url, **options)

    async def connect(self) -> None:
        if self.engine is not None:
            return

        engine = self._create_engine()
        s = self._settings
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type((OSError, SQLAlchemyError, asyncio.TimeoutError)),
                stop=stop_after_attempt(s.db_connect_retries),
                wait=wait_exponential(multiplier=s.db_connect_backoff, max=30),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    await self._probe(engine)
        except Exception:
            await engine.dispose()
            logger.error("Database unreachable after %d attempts", s.db_connect_retries)
            raise

        self.engine = engine
        self.session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        logger.info("Database connected")

    async def _probe(self, engine: AsyncEngine) -> None:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def ping(self) -> bool:
        """Lightweight reachability check for /health."""
        if self.engine is None:
            return False
        try:
            await asyncio.wait_for(self._probe(self.engine), timeout=self._settings.db_connect_timeout)
            return True
        except Exception as e:
            logger.warning("Database ping failed: %s", e)
            return False

    def session(self) -> AsyncSession:
        if self.session_factory is None:
            raise ServiceUnavailableError("Database is not connected")
        return self.session_factory()

    async def disconnect(self) -> None:
        if self.engine is None:
            return
        await self.engine.dispose()
        self.engine = None
        self.session_factory = None
        logger.info("Database disconnected")


# ── Session Dependency ────────────────────────────────────────────────────
async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session per request.

    The primary mutation and its audit entry share this session, so they are
    committed together when the handler returns and rolled back together when
    anything raises. Declare it with `scope="function"` so the commit runs
    before the response is sent.
    """
    database: Database = request.app.state.resources.database
    async with database.session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
