"""
Redis client configuration and connection management.
"""

import asyncio
import json
from typing import Optional, Any, Dict
import redis.asyncio as redis
from redis.asyncio import Redis

from checkin_payout.core.config import settings

import structlog

logger = structlog.get_logger(__name__)


class RedisClient:
    """Async Redis client wrapper with connection management."""

    def __init__(self, url: Optional[str] = None, client: Optional[Redis] = None):
        self.url = url or settings.redis_url
        self._client: Optional[Redis] = client
        self._pool: Optional[redis.ConnectionPool] = None

    async def connect(self) -> None:
        """Establish Redis connection."""
        try:
            if self._client is None:
                self._pool = redis.ConnectionPool.from_url(
                    self.url,
                    decode_responses=True,
                    max_connections=20,
                    retry_on_timeout=True,
                    socket_keepalive=True,
                )
                self._client = Redis(connection_pool=self._pool)

                await self._client.ping()
                logger.info("Redis connection established", url=self.url)

        except Exception as e:
            logger.error("Failed to connect to Redis", url=self.url, error=str(e))
            raise

    async def disconnect(self) -> None:
        """Close Redis connection."""
        try:
            if self._client:
                await self._client.aclose()
                self._client = None
                logger.info("Redis connection closed")
        except Exception as e:
            logger.error("Error closing Redis connection", error=str(e))

    @property
    def client(self) -> Redis:
        """Get Redis client instance."""
        if self._client is None:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    async def health_check(self) -> Dict[str, Any]:
        """Check Redis connection health."""
        try:
            if self._client is None:
                return {"status": "disconnected", "error": "No connection"}

            loop = asyncio.get_running_loop()
            start_time = loop.time()
            result = await self._client.ping()
            ping_time = (loop.time() - start_time) * 1000

            return {
                "status": "healthy" if result else "unhealthy",
                "ping_ms": round(ping_time, 2),
            }
        except Exception as e:
            return {"status": "error", "error": str(e)}

    # JSON helpers
    async def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        """Get a JSON document, None when missing."""
        value = await self.client.get(key)
        if value is None:
            return None
        return json.loads(value)

    async def set_json(self, key: str, value: Dict[str, Any], ex: Optional[int] = None) -> bool:
        """Store a JSON document with optional expiration."""
        return await self.client.set(key, json.dumps(value, default=str), ex=ex)


# Global Redis client instance
_redis_client: Optional[RedisClient] = None


async def get_redis_client() -> RedisClient:
    """Get global Redis client instance."""
    global _redis_client

    if _redis_client is None:
        _redis_client = RedisClient()
        await _redis_client.connect()

    return _redis_client


def set_redis_client(client: Optional[RedisClient]) -> None:
    """Replace the global client (used by tests and embedding processes)."""
    global _redis_client
    _redis_client = client


async def close_redis_client() -> None:
    """Close global Redis client."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.disconnect()
        _redis_client = None
