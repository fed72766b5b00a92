"""
Redis key building for queue, rate limit and payment challenge state.
"""

from typing import Any
from datetime import datetime, date

from checkin_payout.core.config import settings


class CacheKeyBuilder:
    """Utility for building consistent Redis keys."""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix
        self.separator = ":"

    def _normalize_value(self, value: Any) -> str:
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        return str(value)

    def build(self, *parts: Any) -> str:
        """Build key from parts."""
        normalized_parts = []
        if self.prefix:
            normalized_parts.append(self.prefix.rstrip(self.separator))
        for part in parts:
            if part is not None:
                normalized_parts.append(self._normalize_value(part))
        return self.separator.join(normalized_parts)

    # Payout queue keys
    def payout_queue(self) -> str:
        return self.build("payout", "queue")

    def payout_processing(self) -> str:
        return self.build("payout", "processing")

    def payout_failed(self) -> str:
        return self.build("payout", "failed")

    def payout_status(self, payout_id: str) -> str:
        return self.build("payout", "status", payout_id)

    # Rate limit keys
    def checkin_rate_limit(self, did: str, day: date) -> str:
        return self.build("ratelimit", "checkin", did, day)

    # X402 challenge keys
    def x402_order(self, order_id: str) -> str:
        return self.build("x402", "order", order_id)

    def x402_pending(self, user_id: str, day: date) -> str:
        return self.build("x402", "pending", user_id, day)


# Global key builder instance
cache_keys = CacheKeyBuilder(prefix=settings.redis_prefix)
