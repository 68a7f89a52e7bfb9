"""
Keystone Backend — Redis Handle
===============================

What:  Optional shared cache used by the rate limiter, realtime fan-out and
       (through its URL) the Celery broker.
How:   `redis.asyncio` client created on `connect()` and probed with PING under a
       bounded retry. When Redis stays unreachable the caller decides how to
       degrade; this class only reports.
"""

import asyncio
import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)


class RedisCache:
    def __init__(self, url: str, connect_timeout: float = 5.0, retries: int = 3):
        self._url = url
        self._connect_timeout = connect_timeout
        self._retries = retries
        self.client: Optional[redis.Redis] = None

    @property
    def is_ready(self) -> bool:
        return self.client is not None

    async def connect(self) -> None:
        client = redis.from_url(
            self._url,
            decode_responses=True,
            socket_connect_timeout=self._connect_timeout,
            health_check_interval=30,
        )
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type((RedisError, OSError, asyncio.TimeoutError)),
                stop=stop_after_attempt(self._retries),
                wait=wait_exponential(multiplier=0.5, max=10),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    await client.ping()
        except Exception:
            await client.aclose()
            raise

        self.client = client
        logger.info("Redis connected")

    async def ping(self) -> bool:
        if self.client is None:
            return False
        try:
            return bool(await asyncio.wait_for(self.client.ping(), timeout=self._connect_timeout))
        except Exception as e:
            logger.warning("Redis ping failed: %s", e)
            return False

    async def close(self) -> None:
        if self.client is None:
            return
        await self.client.aclose()
        self.client = None
        logger.info("Redis connection closed")
