"""Per-tenant mutual exclusion backed by Redis.

A lock is a key ``lock:{name}:{tenant_id}`` set with NX and a TTL (so a
crashed holder cannot wedge the tenant). Release deletes the key only if it
still holds our owner token.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from social_connector.config import Settings

logger = logging.getLogger(__name__)

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

_redis_client: aioredis.Redis | None = None


def _get_redis(settings: Settings) -> aioredis.Redis:
    """Get or create a shared async Redis client."""
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis_client


class TenantLock:
    """Non-blocking per-tenant lock.

    ``hold()`` yields True if this caller owns the lock and False if another
    holder is active. If Redis is unreachable the lock fails open (yields True)
    with a warning; writers still guard with compare-and-swap.
    """

    def __init__(self, redis: aioredis.Redis, name: str, ttl_seconds: int) -> None:
        self._redis = redis
        self._name = name
        self._ttl = ttl_seconds

    def _key(self, tenant_id: str) -> str:
        return f"lock:{self._name}:{tenant_id}"

    @asynccontextmanager
    async def hold(self, tenant_id: str) -> AsyncIterator[bool]:
        key = self._key(tenant_id)
        owner = str(uuid.uuid4())
        try:
            acquired = bool(await self._redis.set(key, owner, nx=True, ex=self._ttl))
        except RedisError as e:
            logger.warning("Tenant lock unavailable for %s (failing open): %s", key, e)
            acquired = None

        if acquired is None:
            yield True
            return

        if not acquired:
            logger.info("Lock %s is held by another worker", key)
            yield False
            return

        try:
            yield True
        finally:
            try:
                await self._redis.eval(_RELEASE_SCRIPT, 1, key, owner)
            except RedisError as e:
                # The TTL frees the key eventually
                logger.warning("Failed to release %s: %s", key, e)


def get_refresh_lock(settings: Settings) -> TenantLock:
    return TenantLock(_get_redis(settings), "token-refresh", settings.refresh_lock_ttl_seconds)
