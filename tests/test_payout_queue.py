"""
Tests for the Redis payout queue and the daily rate limiter.
"""

import json
from datetime import timedelta

import pytest

from checkin_payout.core.exceptions import CheckInRateLimitedError, InvalidJobError
from checkin_payout.services.checkin_service import utc_today
from checkin_payout.services.payout_queue import PayoutJob


def make_job(payout_id: str = "payout-1", **kwargs) -> PayoutJob:
    return PayoutJob(payout_id=payout_id, did="did:pkh:eip155:137:0xabc", amount="10000000000000000000", **kwargs)


def test_job_wire_format_uses_camel_case():
    payload = json.loads(make_job(retry_count=2, timestamp=1700000000000).to_json())

    assert payload == {
        "payoutId": "payout-1",
        "did": "did:pkh:eip155:137:0xabc",
        "amount": "10000000000000000000",
        "retryCount": 2,
        "timestamp": 1700000000000,
    }


def test_job_omits_retry_count_when_unset():
    payload = json.loads(make_job().to_json())
    assert "retryCount" not in payload
    assert isinstance(payload["timestamp"], int)


@pytest.mark.parametrize("raw", [
    "not json",
    '{"did": "x", "amount": "1", "timestamp": 1}',
    '{"payoutId": "p", "did": "x", "amount": "1.5", "timestamp": 1}',
    '{"payoutId": "p", "did": "x", "amount": "-3", "timestamp": 1}',
])
def test_parse_rejects_malformed_payloads(raw):
    with pytest.raises(InvalidJobError) as exc_info:
        PayoutJob.parse(raw)
    assert exc_info.value.raw == raw
    assert exc_info.value.code == "INVALID_JOB"


@pytest.mark.asyncio
async def test_enqueue_and_dequeue_fifo(queue):
    await queue.enqueue(make_job("a"))
    await queue.enqueue(make_job("b"))

    assert await queue.get_queue_length() == 2

    first = await queue.dequeue(timeout=0.1)
    second = await queue.dequeue(timeout=0.1)

    assert first.job.payout_id == "a"
    assert second.job.payout_id == "b"
    assert await queue.get_queue_length() == 0


@pytest.mark.asyncio
async def test_claimed_job_stays_visible_until_acknowledged(queue):
    await queue.enqueue(make_job("a"))

    claimed = await queue.dequeue(timeout=0.1)
    assert await queue.get_processing_length() == 1
    assert await queue.get_processing_jobs() == [claimed.raw]

    assert await queue.acknowledge(claimed.raw) == 1
    assert await queue.get_processing_length() == 0


@pytest.mark.asyncio
async def test_dequeue_invalid_payload_leaves_raw_on_processing_list(queue, redis_client):
    await redis_client.client.rpush(queue.queue_key, "garbage")

    with pytest.raises(InvalidJobError) as exc_info:
        await queue.dequeue(timeout=0.1)

    assert await queue.get_processing_jobs() == ["garbage"]
    await queue.acknowledge(exc_info.value.raw)
    assert await queue.get_processing_length() == 0


@pytest.mark.asyncio
async def test_status_hash_lifecycle(queue):
    await queue.enqueue(make_job("a"))
    assert (await queue.get_status("a"))["status"] == "queued"

    await queue.mark_as_processing("a")
    assert (await queue.get_status("a"))["status"] == "processing"

    await queue.mark_as_completed("a", "0xhash")
    status = await queue.get_status("a")
    assert status["status"] == "completed"
    assert status["tx_hash"] == "0xhash"


@pytest.mark.asyncio
async def test_failed_jobs_most_recent_first(queue):
    await queue.mark_as_failed("a", "first")
    await queue.mark_as_failed("b", "second")

    failed = await queue.get_failed_jobs(limit=10)

    assert [entry["payoutId"] for entry in failed] == ["b", "a"]
    assert failed[0]["error"] == "second"
    assert await queue.get_failed_jobs(limit=1) == failed[:1]
    assert await queue.get_failed_jobs(limit=0) == []


@pytest.mark.asyncio
async def test_clear_processing_returns_leftovers(queue):
    await queue.enqueue(make_job("a"))
    await queue.enqueue(make_job("b"))
    await queue.dequeue(timeout=0.1)
    await queue.dequeue(timeout=0.1)

    leftovers = await queue.clear_processing()

    assert [PayoutJob.parse(raw).payout_id for raw in leftovers] == ["a", "b"]
    assert await queue.get_processing_length() == 0


@pytest.mark.asyncio
async def test_rate_limiter_allows_daily_allowance_once(rate_limiter, redis_client):
    day = utc_today()

    assert await rate_limiter.consume("did:x", day) == 1
    with pytest.raises(CheckInRateLimitedError):
        await rate_limiter.consume("did:x", day)

    # Other DIDs and other days are independent
    assert await rate_limiter.consume("did:y", day) == 1
    assert await rate_limiter.consume("did:x", day + timedelta(days=1)) == 1


@pytest.mark.asyncio
async def test_rate_limiter_release_restores_allowance(rate_limiter, redis_client):
    day = utc_today()
    await rate_limiter.consume("did:x", day)
    await rate_limiter.release("did:x", day)

    assert await rate_limiter.consume("did:x", day) == 1


@pytest.mark.asyncio
async def test_rate_limiter_release_never_goes_negative(rate_limiter, redis_client):
    day = utc_today()
    await rate_limiter.release("did:x", day)

    key = rate_limiter._keys.checkin_rate_limit("did:x", day)
    assert await redis_client.client.get(key) == "0"
