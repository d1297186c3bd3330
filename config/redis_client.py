"""
config/redis_client.py
Async Redis client for the JWT deny-list, rate limiting and
single-runner locks for periodic escrow jobs.
"""

from typing import Optional
import redis.asyncio as aioredis

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


def get_redis() -> aioredis.Redis:
    """FastAPI dependency to get Redis client."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


class RedisCache:
    """Helper class for common Redis patterns."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    # ── Job Locking ──────────────────────────────────────────
    async def acquire_job_lock(self, name: str, owner: str, ttl: int = settings.SWEEP_LOCK_TTL_SECONDS) -> bool:
        """
        Atomic lock using SET NX (set if not exists).
        Returns True if lock acquired, False if another runner holds it.
        """
        result = await self.client.set(f"job_lock:{name}", owner, ex=ttl, nx=True)
        return result is True

    async def release_job_lock(self, name: str, owner: str) -> None:
        key = f"job_lock:{name}"
        if await self.client.get(key) == owner:
            await self.client.delete(key)

    # ── JWT Deny List ─────────────────────────────────────────
    # Written by the identity provider on logout; read-only here.
    async def is_token_revoked(self, jti: str) -> bool:
        return await self.client.exists(f"jwt_revoked:{jti}") == 1

    # ── Rate Limiting ─────────────────────────────────────────
    async def check_rate_limit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """
        Fixed window rate limiter.
        Returns True if request is allowed, False if rate limited.
        """
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, window_seconds)
        results = await pipe.execute()
        current_count = results[0]
        return current_count <= limit
