"""
Durable payout job queue on Redis lists.

Jobs are claimed with an atomic BLMOVE from the pending list onto a
processing list, so a crash between claim and acknowledgment leaves the
job visible for recovery instead of losing it. The relational store stays
the source of truth; queue entries are redundant job descriptors.
"""

import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from checkin_payout.cache.redis_client import RedisClient
from checkin_payout.cache.cache_keys import CacheKeyBuilder, cache_keys
from checkin_payout.core.exceptions import InvalidJobError

logger = structlog.get_logger(__name__)

FAILED_JOBS_KEEP = 1000
STATUS_TTL_SECONDS = 7 * 24 * 3600


def _now_ms() -> int:
    return int(time.time() * 1000)


class PayoutJob(BaseModel):
    """Wire format of a queued payout job."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    payout_id: str = Field(alias="payoutId", min_length=1)
    did: str = Field(min_length=1)
    amount: str = Field(pattern=r"^\d+$")
    retry_count: Optional[int] = Field(default=None, alias="retryCount", ge=0)
    timestamp: int = Field(default_factory=_now_ms)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def parse(cls, raw: str) -> "PayoutJob":
        """Deserialize a payload, raising InvalidJobError when malformed."""
        try:
            return cls.model_validate_json(raw)
        except PydanticValidationError as e:
            raise InvalidJobError(raw, str(e)) from e


@dataclass(frozen=True)
class ClaimedJob:
    """A job moved onto the processing list; `raw` is the acknowledgment handle."""

    raw: str
    job: PayoutJob


class PayoutQueue:
    """FIFO at-least-once payout queue."""

    def __init__(self, redis_client: RedisClient, keys: CacheKeyBuilder = cache_keys):
        self.redis = redis_client
        self.queue_key = keys.payout_queue()
        self.processing_key = keys.payout_processing()
        self.failed_key = keys.payout_failed()
        self._keys = keys

    async def enqueue(self, job: PayoutJob) -> None:
        """Append a job to the pending list."""
        payload = job.to_json()
        async with self.redis.client.pipeline(transaction=True) as pipe:
            pipe.rpush(self.queue_key, payload)
            pipe.hset(
                self._keys.payout_status(job.payout_id),
                mapping={"status": "queued", "queued_at": _iso_now()}
            )
            pipe.expire(self._keys.payout_status(job.payout_id), STATUS_TTL_SECONDS)
            await pipe.execute()

        logger.info(
            "Payout job enqueued",
            payout_id=job.payout_id,
            did=job.did,
            retry_count=job.retry_count
        )

    async def dequeue(self, timeout: float = 1) -> Optional[ClaimedJob]:
        """
        Claim the oldest pending job.

        Blocks for at most `timeout` seconds. Returns None when nothing
        arrived. A malformed payload raises InvalidJobError; it is already
        on the processing list and must be acknowledged by the caller.
        """
        raw = await self.redis.client.blmove(
            self.queue_key, self.processing_key, timeout, "LEFT", "RIGHT"
        )
        if raw is None:
            return None
        return ClaimedJob(raw=raw, job=PayoutJob.parse(raw))

    async def acknowledge(self, raw: str) -> int:
        """Remove a claimed job from the processing list."""
        return await self.redis.client.lrem(self.processing_key, 1, raw)

    async def mark_as_processing(self, payout_id: str) -> None:
        key = self._keys.payout_status(payout_id)
        await self.redis.client.hset(
            key, mapping={"status": "processing", "started_at": _iso_now()}
        )

    async def mark_as_completed(self, payout_id: str, tx_hash: str) -> None:
        key = self._keys.payout_status(payout_id)
        async with self.redis.client.pipeline(transaction=True) as pipe:
            pipe.hset(
                key,
                mapping={"status": "completed", "tx_hash": tx_hash, "completed_at": _iso_now()}
            )
            pipe.expire(key, STATUS_TTL_SECONDS)
            await pipe.execute()

    async def mark_as_failed(self, payout_id: str, error: str) -> None:
        key = self._keys.payout_status(payout_id)
        entry = json.dumps({"payoutId": payout_id, "error": error, "failedAt": _iso_now()})
        async with self.redis.client.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping={"status": "failed", "error": error, "failed_at": _iso_now()})
            pipe.expire(key, STATUS_TTL_SECONDS)
            pipe.lpush(self.failed_key, entry)
            pipe.ltrim(self.failed_key, 0, FAILED_JOBS_KEEP - 1)
            await pipe.execute()

    async def get_status(self, payout_id: str) -> Dict[str, str]:
        return await self.redis.client.hgetall(self._keys.payout_status(payout_id))

    async def get_queue_length(self) -> int:
        return await self.redis.client.llen(self.queue_key)

    async def get_processing_length(self) -> int:
        return await self.redis.client.llen(self.processing_key)

    async def get_failed_jobs(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Most recent failures first."""
        if limit <= 0:
            return []
        entries = await self.redis.client.lrange(self.failed_key, 0, limit - 1)
        failed = []
        for entry in entries:
            try:
                failed.append(json.loads(entry))
            except json.JSONDecodeError:
                logger.warning("Skipping malformed failed-job entry", entry=entry[:200])
        return failed

    async def get_processing_jobs(self) -> List[str]:
        return await self.redis.client.lrange(self.processing_key, 0, -1)

    async def clear_processing(self) -> List[str]:
        """Drop every claimed-but-unacknowledged entry and return them."""
        async with self.redis.client.pipeline(transaction=True) as pipe:
            pipe.lrange(self.processing_key, 0, -1)
            pipe.delete(self.processing_key)
            leftovers, _ = await pipe.execute()
        return leftovers


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()
