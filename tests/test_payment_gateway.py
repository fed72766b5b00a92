"""
Tests for the X402 payment gate in front of check-in creation.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from checkin_payout.core.config import settings
from checkin_payout.core.exceptions import (
    PaymentOrderNotFoundError,
    UnauthorizedError,
    UserInactiveError,
    X402Error,
)
from checkin_payout.models import CheckIn, PaymentStatus, User, UserStatus
from checkin_payout.services.checkin_service import CheckInService
from checkin_payout.services.payment_gateway import PaymentGateway
from checkin_payout.services.rate_limiter import CheckInRateLimiter
from checkin_payout.services.x402_client import (
    INSUFFICIENT_AMOUNT,
    NO_TRANSACTION,
    PENDING_CONFIRMATION,
    VerifyResult,
)

from conftest import DAILY_REWARD


@pytest.fixture
def gateway(redis_client, x402, checkin_service):
    return PaymentGateway(redis_client, x402, checkin_service)


async def check_in_count(session) -> int:
    return await session.scalar(select(func.count()).select_from(CheckIn))


@pytest.mark.asyncio
async def test_challenge_issued_without_persisting(gateway, session, redis_client, make_user):
    user = await make_user()

    outcome = await gateway.create_challenge(user)

    assert outcome.status_code == 402
    assert outcome.challenge.order_id == "order-1"
    assert set(outcome.challenge.to_dict()) == {
        "order_id", "payment_address", "price_amount", "blockchain_name", "token_symbol", "expires_at"
    }
    assert await check_in_count(session) == 0

    order = await redis_client.get_json(gateway._keys.x402_order("order-1"))
    assert order["user_id"] == user.id
    assert await redis_client.client.ttl(gateway._keys.x402_order("order-1")) > 0


@pytest.mark.asyncio
async def test_pending_challenge_is_reused(gateway, x402, make_user):
    user = await make_user()

    first = await gateway.create_challenge(user)
    second = await gateway.create_challenge(user)

    assert second.status_code == 402
    assert second.challenge.order_id == first.challenge.order_id
    assert len(x402.issued) == 1


@pytest.mark.asyncio
async def test_expired_challenge_is_replaced(gateway, x402, make_user):
    user = await make_user()
    first = await gateway.create_challenge(user)
    first.challenge.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    await gateway._store_challenge(user.id, user.did, datetime.now(timezone.utc).date(), first.challenge)

    second = await gateway.create_challenge(user)

    assert second.challenge.order_id == "order-2"
    assert len(x402.issued) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("reason", [PENDING_CONFIRMATION, NO_TRANSACTION, INSUFFICIENT_AMOUNT])
async def test_unverified_payment_reports_reason(gateway, x402, session, make_user, reason):
    user = await make_user()
    challenge = (await gateway.create_challenge(user)).challenge
    x402.verify_results.append(VerifyResult(success=False, reason=reason))

    outcome = await gateway.verify(challenge.order_id, user)

    assert outcome.success is False
    assert outcome.reason == reason
    assert await check_in_count(session) == 0
    assert x402.settled == []


@pytest.mark.asyncio
async def test_verified_payment_creates_check_in(gateway, x402, session, queue, redis_client, make_user):
    user = await make_user()
    challenge = (await gateway.create_challenge(user)).challenge
    x402.verify_results.append(VerifyResult(success=False, reason=PENDING_CONFIRMATION))

    pending = await gateway.verify(challenge.order_id, user)
    assert pending.success is False

    outcome = await gateway.verify(challenge.order_id, user)

    assert outcome.success is True
    assert outcome.already_checked_in is False
    assert outcome.check_in.payment_order_id == challenge.order_id
    assert outcome.check_in.payment_status == PaymentStatus.PAYMENT_SUCCESS
    assert x402.settled == [challenge.order_id]
    assert await queue.get_queue_length() == 1
    assert await redis_client.get_json(gateway._keys.x402_order(challenge.order_id)) is None

    # Verifying again re-confirms without side effects
    again = await gateway.verify(challenge.order_id, user)
    assert again.success is True
    assert again.check_in.id == outcome.check_in.id
    assert await check_in_count(session) == 1
    assert x402.verify_calls.count(challenge.order_id) == 2


@pytest.mark.asyncio
async def test_settlement_failure_does_not_undo_check_in(gateway, x402, session, make_user):
    user = await make_user()
    challenge = (await gateway.create_challenge(user)).challenge
    x402.settle_error = X402Error("settle unavailable", status_code=503)

    outcome = await gateway.verify(challenge.order_id, user)

    assert outcome.success is True
    assert await check_in_count(session) == 1


@pytest.mark.asyncio
async def test_verify_unknown_order(gateway, make_user):
    user = await make_user()
    with pytest.raises(PaymentOrderNotFoundError):
        await gateway.verify("nope", user)


@pytest.mark.asyncio
async def test_verify_foreign_order(gateway, make_user):
    owner = await make_user()
    other = await make_user()
    challenge = (await gateway.create_challenge(owner)).challenge

    with pytest.raises(UnauthorizedError):
        await gateway.verify(challenge.order_id, other)

    await gateway.verify(challenge.order_id, owner)
    with pytest.raises(UnauthorizedError):
        await gateway.verify(challenge.order_id, other)


@pytest.mark.asyncio
async def test_local_check_in_short_circuits_challenge(gateway, checkin_service, x402, make_user):
    user = await make_user()
    await checkin_service.create_daily_check_in(user.id, user.did)

    outcome = await gateway.create_challenge(user)

    assert outcome.status_code == 200
    assert outcome.already_checked_in is True
    assert x402.issued == []


@pytest.mark.asyncio
async def test_upstream_already_checked_in_is_reconciled(gateway, x402, session, make_user):
    user = await make_user()
    x402.already_checked_in = True

    outcome = await gateway.create_challenge(user)

    assert outcome.status_code == 200
    assert outcome.already_checked_in is True
    assert outcome.check_in is not None
    assert await check_in_count(session) == 1


@pytest.mark.asyncio
async def test_verify_after_day_already_checked_in(gateway, checkin_service, x402, make_user):
    user = await make_user()
    challenge = (await gateway.create_challenge(user)).challenge
    await checkin_service.create_daily_check_in(user.id, user.did)

    outcome = await gateway.verify(challenge.order_id, user)

    assert outcome.success is True
    assert outcome.already_checked_in is True
    assert x402.verify_calls == []


@pytest.mark.asyncio
async def test_paid_order_verifiable_after_challenge_expires(gateway, x402, redis_client, make_user):
    user = await make_user()
    day = datetime.now(timezone.utc).date()
    challenge = (await gateway.create_challenge(user)).challenge
    challenge.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    await gateway._store_challenge(user.id, user.did, day, challenge)

    ttl = await redis_client.client.ttl(gateway._keys.x402_order(challenge.order_id))
    assert ttl > settings.payment_poll_interval * settings.payment_poll_max_attempts

    # The expired challenge is no longer offered
    replacement = await gateway.create_challenge(user)
    assert replacement.challenge.order_id == "order-2"

    # but a payment made just before expiry still verifies
    outcome = await gateway.verify(challenge.order_id, user)
    assert outcome.success is True
    assert outcome.check_in.payment_order_id == challenge.order_id


@pytest.mark.asyncio
async def test_inactive_user_gets_no_challenge(gateway, x402, make_user):
    user = await make_user(status=UserStatus.SUSPENDED)

    with pytest.raises(UserInactiveError):
        await gateway.create_challenge(user)

    assert x402.issued == []
    assert x402.verify_calls == []


def racing_existence_check(service, misses: int):
    """Report no check-in for the first `misses` lookups, as a request that lost the race would see."""
    real = service.get_check_in_for_day
    calls = {"n": 0}

    async def lookup(user_id, day):
        calls["n"] += 1
        if calls["n"] <= misses:
            return None
        return await real(user_id, day)

    return lookup


@pytest.fixture
def racing_gateway(session, queue, redis_client, x402):
    limiter = CheckInRateLimiter(redis_client, allowance=5)
    service = CheckInService(session, queue, limiter, reward_amount=DAILY_REWARD)
    return PaymentGateway(redis_client, x402, service)


async def competing_check_in(session_factory, queue, redis_client, user_id: str, did: str):
    async with session_factory() as other:
        limiter = CheckInRateLimiter(redis_client, allowance=5)
        service = CheckInService(other, queue, limiter, reward_amount=DAILY_REWARD)
        return await service.create_daily_check_in(user_id, did)


@pytest.mark.asyncio
async def test_verify_loses_race_to_concurrent_check_in(
    racing_gateway, session, session_factory, queue, redis_client, x402, make_user, monkeypatch
):
    made = await make_user()
    # Loaded through the gateway's own session, as the request dependency does
    user = await session.get(User, made.id)
    challenge = (await racing_gateway.create_challenge(user)).challenge

    winner = await competing_check_in(session_factory, queue, redis_client, made.id, made.did)
    monkeypatch.setattr(
        racing_gateway.checkins, "get_check_in_for_day", racing_existence_check(racing_gateway.checkins, 2)
    )

    outcome = await racing_gateway.verify(challenge.order_id, user)

    assert outcome.success is True
    assert outcome.already_checked_in is True
    assert outcome.check_in.id == winner.id
    assert await check_in_count(session) == 1


@pytest.mark.asyncio
async def test_upstream_reconcile_loses_race_to_concurrent_check_in(
    racing_gateway, session, session_factory, queue, redis_client, x402, make_user, monkeypatch
):
    made = await make_user()
    user = await session.get(User, made.id)
    x402.already_checked_in = True

    winner = await competing_check_in(session_factory, queue, redis_client, made.id, made.did)
    monkeypatch.setattr(
        racing_gateway.checkins, "get_check_in_for_day", racing_existence_check(racing_gateway.checkins, 2)
    )

    outcome = await racing_gateway.create_challenge(user)

    assert outcome.status_code == 200
    assert outcome.already_checked_in is True
    assert outcome.check_in.id == winner.id
