"""
Redis layer backing the payout queue, rate limiter and challenge state.
"""

from .redis_client import get_redis_client, close_redis_client, RedisClient
from .cache_keys import CacheKeyBuilder, cache_keys

__all__ = [
    "get_redis_client",
    "close_redis_client",
    "RedisClient",
    "CacheKeyBuilder",
    "cache_keys",
]
