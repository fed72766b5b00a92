"""
Per-DID daily check-in allowance backed by Redis counters.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

import structlog

from checkin_payout.cache.redis_client import RedisClient
from checkin_payout.cache.cache_keys import CacheKeyBuilder, cache_keys
from checkin_payout.core.config import settings
from checkin_payout.core.exceptions import CheckInRateLimitedError

logger = structlog.get_logger(__name__)

# Counters outlive the day they guard so late clock skew is still caught
EXPIRY_SLACK = timedelta(hours=1)


class CheckInRateLimiter:
    """Consumes one unit of a DID's daily allowance per check-in attempt."""

    def __init__(
        self,
        redis_client: RedisClient,
        allowance: Optional[int] = None,
        keys: CacheKeyBuilder = cache_keys
    ):
        self.redis = redis_client
        self.allowance = allowance if allowance is not None else settings.checkin_daily_allowance
        self._keys = keys

    def _ttl_seconds(self, day: date) -> int:
        end_of_day = datetime.combine(day + timedelta(days=1), time.min, tzinfo=timezone.utc)
        remaining = end_of_day + EXPIRY_SLACK - datetime.now(timezone.utc)
        return max(int(remaining.total_seconds()), 1)

    async def consume(self, did: str, day: date) -> int:
        """
        Take one unit of allowance.

        Raises:
            CheckInRateLimitedError: when the allowance was already used up
        """
        key = self._keys.checkin_rate_limit(did, day)
        async with self.redis.client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, self._ttl_seconds(day))
            used, _ = await pipe.execute()

        if used > self.allowance:
            logger.warning("Check-in rate limit hit", did=did, date=day.isoformat(), used=used)
            raise CheckInRateLimitedError(did, day.isoformat())
        return used

    async def release(self, did: str, day: date) -> None:
        """Give back one unit after an attempt was rejected downstream."""
        key = self._keys.checkin_rate_limit(did, day)
        remaining = await self.redis.client.decr(key)
        if remaining < 0:
            await self.redis.client.set(key, 0, keepttl=True)
