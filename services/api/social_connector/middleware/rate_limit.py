"""Per-tenant rate limiting backed by a Redis sorted-set sliding window."""

import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Callable

import redis.asyncio as redis
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from social_connector.config import Settings

logger = logging.getLogger(__name__)

EXEMPT_PATHS = frozenset({"/health", "/health/ready", "/metrics"})
WINDOW_SECONDS = 60


@dataclass
class WindowCount:
    limit: int
    seen: int

    @property
    def exceeded(self) -> bool:
        return self.seen >= self.limit

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.seen - 1)


class SlidingWindowLimiter:
    """Counts hits per identifier over the last ``window_seconds``."""

    def __init__(self, redis_url: str, limit: int, window_seconds: int = WINDOW_SECONDS) -> None:
        self._redis_url = redis_url
        self._redis: redis.Redis | None = None
        self.limit = limit
        self.window_seconds = window_seconds

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    async def hit(self, identifier: str) -> WindowCount:
        """Record one hit and return how many preceded it in the window."""
        r = await self._get_redis()
        key = f"ratelimit:{identifier}"
        now = time.time()

        pipe = r.pipeline()
        pipe.zremrangebyscore(key, 0, now - self.window_seconds)
        pipe.zcard(key)
        pipe.zadd(key, {str(now): now})
        pipe.expire(key, self.window_seconds)
        _, seen, _, _ = await pipe.execute()
        return WindowCount(limit=self.limit, seen=seen)


def request_identifier(request: Request) -> str | None:
    """Tenant header hash, or the client IP when no tenant is given."""
    tenant_id = request.headers.get("x-tenant-id", "").strip()
    if tenant_id:
        return "tenant:" + hashlib.sha256(tenant_id.encode()).hexdigest()[:16]
    if request.client:
        return f"ip:{request.client.host}"
    return None


def too_many_requests(count: WindowCount, window_seconds: int) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded. Try again later.", "code": "E_RATE_LIMITED", "kind": "transient"},
        headers={
            "Retry-After": str(window_seconds),
            "X-RateLimit-Limit": str(count.limit),
            "X-RateLimit-Remaining": "0",
        },
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rejects tenants that exceed ``rate_limit_per_minute``. Fails open if Redis is down."""

    def __init__(self, app, settings: Settings) -> None:
        super().__init__(app)
        self.limiter = SlidingWindowLimiter(settings.redis_url, settings.rate_limit_per_minute)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        identifier = None if request.url.path in EXEMPT_PATHS else request_identifier(request)
        if identifier is None:
            return await call_next(request)

        try:
            count = await self.limiter.hit(identifier)
        except (RedisError, OSError) as e:
            logger.warning("Rate limit check skipped, Redis unavailable: %s", e)
            return await call_next(request)

        if count.exceeded:
            logger.info("Rate limit exceeded for %s on %s", identifier, request.url.path)
            return too_many_requests(count, self.limiter.window_seconds)

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(count.limit)
        response.headers["X-RateLimit-Remaining"] = str(count.remaining)
        return response
