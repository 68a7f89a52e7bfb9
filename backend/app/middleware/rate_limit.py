"""
Keystone Backend — Rate Limiting
================================

What:  Named fixed-window limiters applied as FastAPI dependencies.
Why:   Protects the API from abuse and quota exhaustion, with tighter budgets
       on expensive or sensitive endpoints.
How:   Each limiter counts hits per key in a shared store under
       `rate-limit:{name}:{key}`. Over the budget it raises
       RateLimitExceededError (429) before the route runs.

Stores:
    RedisRateLimitStore     INCR + EXPIRE on the first hit, TTL for the reset;
                            shared by every worker and instance
    InMemoryRateLimitStore  fixed window per key under an asyncio lock, with a
                            periodic sweep of expired windows; per process

    A Redis error at request time falls back to the in-memory store for that
    request and logs a warning.

Headers:
    Route handlers return ready-made JSONResponses, so the limiter leaves its
    X-RateLimit-Limit / -Remaining / -Reset values on request.state and
    RateLimitHeadersMiddleware copies them onto whatever response goes out,
    error responses included.

Predefined limiters:
    api             15 min  500  user id, else client IP (every /api route)
    strict          15 min  100  user id, else client IP (create endpoints)
    auth            15 min   10  e-mail in the JSON body, else client IP
    password-reset  1 h       3  e-mail in the JSON body, else client IP
    upload          1 h      20  user id, else client IP
    webhook         1 min  1000  path + client IP
    ip              15 min  100  client IP only
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.config import settings
from app.exceptions import RateLimitExceededError
from app.middleware.request_id import client_ip
from app.models.enums import SubscriptionStatus

logger = logging.getLogger(__name__)

KEY_PREFIX = "rate-limit"

KeyFunc = Callable[[Request], Awaitable[str]]


@dataclass(frozen=True)
class RateLimitStatus:
    limit: int
    count: int
    reset_in: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    @property
    def exceeded(self) -> bool:
        return self.count > self.limit

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_in),
        }


# ── Stores ────────────────────────────────────────────────────────────────


class RateLimitStore:
    """Counts hits per key within a fixed window."""

    async def hit(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Records one hit; returns (count in window, seconds until reset)."""
        raise NotImplementedError

    async def undo(self, key: str) -> None:
        raise NotImplementedError


class InMemoryRateLimitStore(RateLimitStore):
    SWEEP_EVERY = 1000

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()
        self._hits = 0

    def __len__(self) -> int:
        return len(self._windows)

    async def hit(self, key: str, window_seconds: int) -> Tuple[int, int]:
        async with self._lock:
            now = self._clock()
            count, reset_at = self._windows.get(key, (0, 0.0))
            if reset_at <= now:
                count, reset_at = 0, now + window_seconds
            count += 1
            self._windows[key] = (count, reset_at)

            self._hits += 1
            if self._hits % self.SWEEP_EVERY == 0:
                self._sweep(now)
            return count, max(1, math.ceil(reset_at - now))

    async def undo(self, key: str) -> None:
        async with self._lock:
            entry = self._windows.get(key)
            if entry and entry[0] > 0:
                self._windows[key] = (entry[0] - 1, entry[1])

    def _sweep(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._windows.items() if reset_at <= now]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug("Swept %d expired rate-limit windows", len(expired))


class RedisRateLimitStore(RateLimitStore):
    def __init__(self, client: redis.Redis, fallback: Optional[InMemoryRateLimitStore] = None):
        self._client = client
        self.fallback = fallback or InMemoryRateLimitStore()

    async def hit(self, key: str, window_seconds: int) -> Tuple[int, int]:
        try:
            count = await self._client.incr(key)
            if count == 1:
                await self._client.expire(key, window_seconds)
            ttl = await self._client.ttl(key)
            if ttl < 0:
                # Key lost its expiry (e.g. a crash between INCR and EXPIRE)
                await self._client.expire(key, window_seconds)
                ttl = window_seconds
            return count, max(1, ttl)
        except RedisError as e:
            logger.warning("Rate-limit store unavailable, using in-memory fallback: %s", e)
            return await self.fallback.hit(key, window_seconds)

    async def undo(self, key: str) -> None:
        try:
            await self._client.decr(key)
        except RedisError as e:
            logger.warning("Rate-limit undo failed for %s: %s", key, e)
            await self.fallback.undo(key)


# ── Key functions ─────────────────────────────────────────────────────────


async def user_or_ip_key(request: Request) -> str:
    user = getattr(request.state, "user", None)
    if user is not None:
        return f"user:{user.id}"
    return f"ip:{client_ip(request)}"


async def ip_key(request: Request) -> str:
    return f"ip:{client_ip(request)}"


async def email_or_ip_key(request: Request) -> str:
    try:
        body = await request.json()
    except ValueError:
        body = None
    email = body.get("email") if isinstance(body, dict) else None
    if isinstance(email, str) and email.strip():
        return f"email:{email.strip().lower()}"
    return f"ip:{client_ip(request)}"


async def webhook_key(request: Request) -> str:
    return f"{request.url.path}:{client_ip(request)}"


# ── Limiter dependency ────────────────────────────────────────────────────


def _store(request: Request) -> RateLimitStore:
    return request.app.state.resources.rate_limit_store


class RateLimiter:
    """
    FastAPI dependency enforcing one named budget.

    Usage:
        @router.post("/", dependencies=[Depends(get_current_user), Depends(strict_limiter)])

    Listing the auth dependency first lets the limiter key on the user id.
    With skip_successful, a request whose handler completes without raising
    gives its hit back.
    """

    def __init__(
        self,
        name: str,
        window_seconds: int,
        max_requests: int,
        key_func: KeyFunc = user_or_ip_key,
        skip_successful: bool = False,
        message: Optional[str] = None,
    ):
        self.name = name
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.key_func = key_func
        self.skip_successful = skip_successful
        self.message = message

    def storage_key(self, key: str) -> str:
        return f"{KEY_PREFIX}:{self.name}:{key}"

    async def check(self, request: Request, max_requests: Optional[int] = None) -> Tuple[str, RateLimitStatus]:
        limit = max_requests or self.max_requests
        key = self.storage_key(await self.key_func(request))
        count, reset_in = await _store(request).hit(key, self.window_seconds)
        status = RateLimitStatus(limit=limit, count=count, reset_in=reset_in)
        request.state.rate_limit = status

        if status.exceeded:
            logger.warning("Rate limit %s exceeded for %s (%d/%d)", self.name, key, count, limit)
            raise RateLimitExceededError(self.message, retry_after=reset_in, limit=limit)
        return key, status

    async def __call__(self, request: Request):
        key, _ = await self.check(request)
        yield
        # Only reached when the handler did not raise
        if self.skip_successful:
            await _store(request).undo(key)


class SubscriptionRateLimiter(RateLimiter):
    """Budget chosen by the caller's subscription tier."""

    TIER_LIMITS = {
        SubscriptionStatus.FREE.value: 100,
        SubscriptionStatus.PRO.value: 1000,
        SubscriptionStatus.ENTERPRISE.value: 10000,
    }

    def limit_for(self, request: Request) -> int:
        user = getattr(request.state, "user", None)
        subscription = getattr(user, "subscription", None)
        return self.TIER_LIMITS.get(subscription, self.max_requests)

    async def __call__(self, request: Request):
        await self.check(request, self.limit_for(request))
        yield


class RateLimitHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        status: Optional[RateLimitStatus] = getattr(request.state, "rate_limit", None)
        if status is not None:
            response.headers.update(status.headers())
        return response


FIFTEEN_MINUTES = 15 * 60
ONE_HOUR = 60 * 60

api_limiter = RateLimiter("api", settings.rate_limit_window, settings.rate_limit_api_max)
strict_limiter = RateLimiter("strict", settings.rate_limit_window, settings.rate_limit_strict_max)
auth_limiter = RateLimiter(
    "auth",
    FIFTEEN_MINUTES,
    10,
    key_func=email_or_ip_key,
    skip_successful=True,
    message="Too many authentication attempts, please try again later",
)
password_reset_limiter = RateLimiter(
    "password-reset",
    ONE_HOUR,
    3,
    key_func=email_or_ip_key,
    message="Too many password reset attempts, please try again later",
)
upload_limiter = RateLimiter("upload", ONE_HOUR, 20, message="Upload limit reached, please try again later")
webhook_limiter = RateLimiter("webhook", 60, 1000, key_func=webhook_key)
ip_limiter = RateLimiter("ip", FIFTEEN_MINUTES, 100, key_func=ip_key)
subscription_limiter = SubscriptionRateLimiter("subscription", FIFTEEN_MINUTES, 100)
