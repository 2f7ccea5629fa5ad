from __future__ import annotations

from typing import Optional, Set

import redis.asyncio as aioredis
from redis import Redis


def _clamp_ttl(ttl_seconds: float) -> int:
    """Redis rejects zero or negative expirations; keep at least one second."""
    return max(1, int(ttl_seconds))


class RedisCache:
    """Thin Redis wrapper for blacklist lookups, exemptions, sessions and OAuth state."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client avoids binding the async pool to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        await self.client.set(key, value, ex=_clamp_ttl(ttl_seconds))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.client.delete(*keys)

    async def pop(self, key: str) -> Optional[str]:
        """Atomically read and delete a key (GETDEL)."""
        return await self.client.getdel(key)

    async def add_to_set(self, key: str, member: str, ttl_seconds: float) -> None:
        pipe = self.client.pipeline()
        pipe.sadd(key, member)
        pipe.expire(key, _clamp_ttl(ttl_seconds))
        await pipe.execute()

    async def set_members(self, key: str) -> Set[str]:
        return set(await self.client.smembers(key))

    async def remove_from_set(self, key: str, *members: str) -> None:
        if members:
            await self.client.srem(key, *members)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client to avoid event loop binding issues under pytest,
    while exposing the same awaitable API as RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        self.client.set(key, value, ex=_clamp_ttl(ttl_seconds))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return self.client.delete(*keys)

    async def pop(self, key: str) -> Optional[str]:
        return self.client.getdel(key)

    async def add_to_set(self, key: str, member: str, ttl_seconds: float) -> None:
        pipe = self.client.pipeline()
        pipe.sadd(key, member)
        pipe.expire(key, _clamp_ttl(ttl_seconds))
        pipe.execute()

    async def set_members(self, key: str) -> Set[str]:
        return set(self.client.smembers(key))

    async def remove_from_set(self, key: str, *members: str) -> None:
        if members:
            self.client.srem(key, *members)

    async def close(self) -> None:
        self.client.close()
