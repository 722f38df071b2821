"""
Redis service for cross-instance coordination.

Provides:
- Distributed locking for sandbox creation and recovery
- Short-lived caching of the last observed sandbox health
"""

import json
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings


class CacheService:
    """
    Async Redis service.

    Lock keys must match the web app's redis-lock helper, which uses
    "lock:sandbox:{id}".
    """

    # Key prefixes
    PREFIX_LOCK = "lock:"
    PREFIX_HEALTH = "shipper:health:"

    # Default TTLs (in seconds)
    TTL_LOCK = 120  # sandbox creation can take a while
    TTL_HEALTH = 30

    def __init__(self, redis_url: str | None = None, client: Any | None = None):
        """Initialize cache service. A pre-built client may be injected."""
        self.redis_url = redis_url or settings.redis_url
        self._client: redis.Redis | None = client

    async def connect(self) -> None:
        """Create Redis connection."""
        if self._client is None:
            self._client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            # Test connection
            await self._client.ping()

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _get_client(self) -> redis.Redis:
        """Get or create Redis client."""
        if self._client is None:
            await self.connect()
        return self._client  # type: ignore

    # =========================================================================
    # Distributed Locking
    # =========================================================================

    async def acquire_lock(
        self,
        resource: str,
        ttl: int | None = None,
    ) -> bool:
        """
        Acquire a distributed lock.

        Args:
            resource: Resource identifier to lock, e.g. "sandbox:{project_id}"
            ttl: Lock TTL in seconds (default: 120)

        Returns:
            True if lock acquired, False otherwise
        """
        client = await self._get_client()
        key = f"{self.PREFIX_LOCK}{resource}"

        # SET NX (only set if not exists) with TTL
        result = await client.set(
            key,
            "1",
            nx=True,
            ex=ttl or self.TTL_LOCK,
        )
        return bool(result)

    async def release_lock(self, resource: str) -> bool:
        """Release a distributed lock."""
        client = await self._get_client()
        key = f"{self.PREFIX_LOCK}{resource}"
        result = await client.delete(key)
        return result > 0

    async def extend_lock(self, resource: str, ttl: int | None = None) -> bool:
        """Extend lock TTL."""
        client = await self._get_client()
        key = f"{self.PREFIX_LOCK}{resource}"

        # Only extend if lock exists
        if await client.exists(key):
            await client.expire(key, ttl or self.TTL_LOCK)
            return True
        return False

    # =========================================================================
    # Health Caching
    # =========================================================================

    async def get_health(self, project_id: str) -> dict | None:
        """Get the last cached health report for a project."""
        client = await self._get_client()
        data = await client.get(f"{self.PREFIX_HEALTH}{project_id}")
        if data:
            return json.loads(data)
        return None

    async def set_health(self, project_id: str, report: dict, ttl: int | None = None) -> None:
        """Cache a health report."""
        client = await self._get_client()
        await client.set(
            f"{self.PREFIX_HEALTH}{project_id}",
            json.dumps(report),
            ex=ttl or self.TTL_HEALTH,
        )

    async def delete_health(self, project_id: str) -> bool:
        client = await self._get_client()
        result = await client.delete(f"{self.PREFIX_HEALTH}{project_id}")
        return result > 0

    # =========================================================================
    # Health Check
    # =========================================================================

    async def health_check(self) -> dict:
        """Check Redis connection health."""
        try:
            client = await self._get_client()
            info = await client.info("server")
            return {
                "healthy": True,
                "redis_version": info.get("redis_version"),
                "connected_clients": info.get("connected_clients"),
            }
        except (RedisError, OSError) as e:
            return {
                "healthy": False,
                "error": str(e),
            }
