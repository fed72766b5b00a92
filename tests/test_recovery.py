"""
Tests for worker startup recovery.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from checkin_payout.models import (
    ActivityAction,
    ActivityLog,
    ActivityStatus,
    CheckIn,
    CheckInStatus,
    PayoutStatus,
    TokenPayout,
)
from checkin_payout.models.base import utcnow
from checkin_payout.worker.recovery import PayoutRecovery


@pytest.fixture
def recovery(session_factory, queue):
    return PayoutRecovery(session_factory, queue, recovery_window_hours=24, pending_timeout_hours=24)


async def load(session_factory, model, pk):
    async with session_factory() as session:
        return await session.get(model, pk)


async def age_rows(session_factory, model, pk, **ages):
    """Push timestamp columns into the past, e.g. updated_at=timedelta(hours=30)."""
    async with session_factory() as session:
        row = await session.get(model, pk)
        for column, age in ages.items():
            setattr(row, column, utcnow() - age)
        await session.commit()


@pytest.mark.asyncio
async def test_crashed_processing_payout_is_resumed(checkin_service, session_factory, queue, chain, worker, recovery, make_user):
    user = await make_user()
    check_in = await checkin_service.create_daily_check_in(user.id, user.did)

    # Worker claimed the job and marked it PROCESSING, then died
    await queue.dequeue(timeout=0.1)
    async with session_factory() as session:
        payout = await session.get(TokenPayout, check_in.payout_id)
        payout.status = PayoutStatus.PROCESSING
        payout.error_reason = "stale"
        await session.commit()

    report = await recovery.run()

    assert report.cleared_processing == 1
    assert report.requeued_payouts == 1
    assert report.expired_check_ins == 0
    assert await queue.get_processing_length() == 0
    assert await queue.get_queue_length() == 1

    payout = await load(session_factory, TokenPayout, check_in.payout_id)
    assert payout.status == PayoutStatus.QUEUED
    assert payout.error_reason is None

    await worker.run_once()

    assert (await load(session_factory, TokenPayout, check_in.payout_id)).status == PayoutStatus.SUCCESS
    assert len(chain.transfers) == 1


@pytest.mark.asyncio
async def test_payouts_outside_window_are_left_alone(checkin_service, session_factory, queue, recovery, make_user):
    user = await make_user()
    check_in = await checkin_service.create_daily_check_in(user.id, user.did)
    await queue.redis.client.delete(queue.queue_key)
    await age_rows(
        session_factory, TokenPayout, check_in.payout_id,
        created_at=timedelta(hours=48), updated_at=timedelta(hours=48)
    )

    assert await recovery.requeue_unfinished_payouts() == 0
    assert await queue.get_queue_length() == 0


@pytest.mark.asyncio
async def test_recently_retried_payout_is_within_window(checkin_service, session_factory, queue, recovery, make_user):
    user = await make_user()
    check_in = await checkin_service.create_daily_check_in(user.id, user.did)
    await queue.redis.client.delete(queue.queue_key)
    await age_rows(session_factory, TokenPayout, check_in.payout_id, created_at=timedelta(hours=48))
    async with session_factory() as session:
        payout = await session.get(TokenPayout, check_in.payout_id)
        payout.retry_count = 2
        await session.commit()

    assert await recovery.requeue_unfinished_payouts() == 1

    jobs = await queue.redis.client.lrange(queue.queue_key, 0, -1)
    assert len(jobs) == 1
    assert '"retryCount":2' in jobs[0]


@pytest.mark.asyncio
async def test_stale_pending_check_in_is_expired(checkin_service, session_factory, recovery, make_user):
    user = await make_user()
    check_in = await checkin_service.create_daily_check_in(user.id, user.did)
    await age_rows(session_factory, CheckIn, check_in.id, updated_at=timedelta(hours=30))

    assert await recovery.expire_stale_check_ins() == 1

    expired = await load(session_factory, CheckIn, check_in.id)
    assert expired.status == CheckInStatus.FAILED
    assert expired.error_reason == "Check-in expired - timeout after 24 hours"

    payout = await load(session_factory, TokenPayout, check_in.payout_id)
    assert payout.status == PayoutStatus.FAILED
    assert payout.error_reason == expired.error_reason

    async with session_factory() as session:
        logs = (await session.execute(
            select(ActivityLog).where(
                ActivityLog.action == ActivityAction.CHECK_IN,
                ActivityLog.status == ActivityStatus.FAILURE,
            )
        )).scalars().all()
    assert len(logs) == 1
    assert logs[0].meta["checkInId"] == check_in.id


@pytest.mark.asyncio
async def test_expired_check_in_payout_is_not_requeued(checkin_service, session_factory, queue, recovery, make_user):
    user = await make_user()
    check_in = await checkin_service.create_daily_check_in(user.id, user.did)
    await queue.redis.client.delete(queue.queue_key)
    await age_rows(session_factory, CheckIn, check_in.id, updated_at=timedelta(hours=30))

    report = await recovery.run()

    assert report.expired_check_ins == 1
    assert report.requeued_payouts == 0
    assert await queue.get_queue_length() == 0


@pytest.mark.asyncio
async def test_pending_check_in_with_paid_payout_is_reconciled(checkin_service, session_factory, recovery, make_user):
    user = await make_user()
    check_in = await checkin_service.create_daily_check_in(user.id, user.did)
    async with session_factory() as session:
        payout = await session.get(TokenPayout, check_in.payout_id)
        payout.status = PayoutStatus.SUCCESS
        payout.tx_hash = "0x" + "aa" * 32
        await session.commit()
    await age_rows(session_factory, CheckIn, check_in.id, updated_at=timedelta(hours=30))

    assert await recovery.expire_stale_check_ins() == 0

    assert (await load(session_factory, CheckIn, check_in.id)).status == CheckInStatus.SUCCESS
    assert (await load(session_factory, TokenPayout, check_in.payout_id)).status == PayoutStatus.SUCCESS


@pytest.mark.asyncio
async def test_fresh_pending_check_in_is_kept(checkin_service, session_factory, recovery, make_user):
    user = await make_user()
    check_in = await checkin_service.create_daily_check_in(user.id, user.did)

    assert await recovery.expire_stale_check_ins() == 0
    assert (await load(session_factory, CheckIn, check_in.id)).status == CheckInStatus.PENDING
