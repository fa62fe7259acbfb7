"""
config/redis_client.py
Async Redis client for caching, per-ustaadh write locks, the JWT
deny-list, and rate limiting.

All state kept here is shared by every API instance pointed at the same
Redis, which is what lets several workers serialize writes per ustaadh.
"""

import json
from typing import Any, Optional

import redis.asyncio as aioredis
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from config.settings import settings


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    """Initialize the Redis connection pool."""
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    # Test connection
    await redis_client.ping()


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> aioredis.Redis:
    """FastAPI dependency to get Redis client."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


class LockUnavailable(Exception):
    """Raised when a write lock is still held after the retry budget."""


# ── Cache Helpers ─────────────────────────────────────────────
class RedisCache:
    """Helper class for common Redis caching patterns."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def get(self, key: str) -> Optional[Any]:
        value = await self.client.get(key)
        if value:
            return json.loads(value)
        return None

    async def set(self, key: str, value: Any, ttl: int = settings.REDIS_CACHE_TTL) -> None:
        await self.client.setex(key, ttl, json.dumps(value, default=str))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    # ── Write Locks ───────────────────────────────────────────
    async def acquire_lock(self, key: str, token: str, ttl: int = settings.REDIS_LOCK_TTL) -> bool:
        """
        Atomic lock using SET NX (set if not exists).
        Returns True if the lock was acquired.
        """
        result = await self.client.set(f"lock:{key}", token, ex=ttl, nx=True)
        return bool(result)

    async def acquire_lock_with_retry(self, key: str, token: str) -> None:
        """Retry acquire_lock a few times before giving up with LockUnavailable."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(settings.REDIS_LOCK_ATTEMPTS),
            wait=wait_fixed(settings.REDIS_LOCK_WAIT_SECONDS),
            retry=retry_if_exception_type(LockUnavailable),
            reraise=True,
        ):
            with attempt:
                if not await self.acquire_lock(key, token):
                    raise LockUnavailable(key)

    async def release_lock(self, key: str, token: str) -> None:
        """Release only if we still own the lock (it may have expired and been re-taken)."""
        current = await self.client.get(f"lock:{key}")
        if current == token:
            await self.client.delete(f"lock:{key}")

    # ── JWT Deny List ─────────────────────────────────────────
    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        """Add JWT ID to deny list until it expires."""
        await self.client.setex(f"jwt_revoked:{jti}", ttl_seconds, "1")

    async def is_token_revoked(self, jti: str) -> bool:
        return await self.client.exists(f"jwt_revoked:{jti}") == 1

    # ── Rate Limiting ─────────────────────────────────────────
    async def hit_rate_limit(self, key: str, window_seconds: int) -> tuple[int, int]:
        """
        Fixed window counter.
        Returns (request count in the current window, seconds until the window resets).
        """
        count = await self.client.incr(key)
        if count == 1:
            await self.client.expire(key, window_seconds)
        ttl = await self.client.ttl(key)
        if ttl is None or ttl < 0:
            await self.client.expire(key, window_seconds)
            ttl = window_seconds
        return count, ttl
