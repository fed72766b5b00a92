"""
X402 payment gate in front of check-in creation.

A challenge is never persisted in the relational store: order state lives
in Redis until verify reports success, and only then is the check-in
created.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional, Dict, Any

import structlog

from checkin_payout.cache.redis_client import RedisClient
from checkin_payout.cache.cache_keys import CacheKeyBuilder, cache_keys
from checkin_payout.core.config import settings
from checkin_payout.core.exceptions import (
    AlreadyCheckedInError,
    PaymentOrderNotFoundError,
    UnauthorizedError,
    UserInactiveError,
    X402Error,
)
from checkin_payout.models import CheckIn, User
from checkin_payout.services.checkin_service import CheckInService, utc_today
from checkin_payout.services.x402_client import X402Challenge, X402Client

logger = structlog.get_logger(__name__)

ORDER_VERIFY_SLACK_SECONDS = 60


@dataclass
class ChallengeOutcome:
    """200 (already checked in) or 402 (payment required)."""
    status_code: int
    already_checked_in: bool = False
    challenge: Optional[X402Challenge] = None
    check_in: Optional[CheckIn] = None


@dataclass
class VerifyOutcome:
    success: bool
    reason: Optional[str] = None
    already_checked_in: bool = False
    check_in: Optional[CheckIn] = None


class PaymentGateway:
    """Issues, verifies and settles X402 check-in payments."""

    def __init__(
        self,
        redis_client: RedisClient,
        x402: X402Client,
        checkin_service: CheckInService,
        keys: CacheKeyBuilder = cache_keys,
    ):
        self.redis = redis_client
        self.x402 = x402
        self.checkins = checkin_service
        self._keys = keys
        self.logger = logger.bind(service="payment_gateway")

    @property
    def verify_grace_seconds(self) -> int:
        """How long a paid order stays verifiable after its challenge expires."""
        return settings.payment_poll_interval * settings.payment_poll_max_attempts + ORDER_VERIFY_SLACK_SECONDS

    async def create_challenge(self, user: User, day: Optional[date] = None) -> ChallengeOutcome:
        """Return an existing check-in, a reusable pending challenge, or a new one."""
        day = day or utc_today()
        # A failed insert rolls the session back and expires `user`
        user_id, did = user.id, user.did

        if not user.is_active:
            raise UserInactiveError(user_id, user.status.value)

        existing = await self.checkins.get_check_in_for_day(user_id, day)
        if existing is not None:
            return ChallengeOutcome(status_code=200, already_checked_in=True, check_in=existing)

        pending = await self._load_pending_challenge(user_id, day)
        if pending is not None:
            self.logger.info("Reusing pending payment challenge", user_id=user_id, order_id=pending.order_id)
            return ChallengeOutcome(status_code=402, challenge=pending)

        result = await self.x402.daily_checkin(user_id, day)

        if result.already_checked_in:
            # Paid upstream but missing locally
            check_in = await self._create_check_in(user_id, did, day, payment_order_id=None)
            return ChallengeOutcome(status_code=200, already_checked_in=True, check_in=check_in)

        challenge = result.challenge
        await self._store_challenge(user_id, did, day, challenge)
        return ChallengeOutcome(status_code=402, challenge=challenge)

    async def verify(self, order_id: str, user: User) -> VerifyOutcome:
        """
        Verify an order's payment and create the check-in once it is paid.

        Idempotent: verifying an order that already produced a check-in
        re-confirms success. A paid order stays verifiable for the client
        polling window after its challenge expires.
        """
        user_id, did = user.id, user.did

        existing = await self.checkins.get_check_in_by_order(order_id)
        if existing is not None:
            if existing.user_id != user_id:
                raise UnauthorizedError("Order belongs to another user", {"order_id": order_id})
            return VerifyOutcome(success=True, check_in=existing)

        order = await self.redis.get_json(self._keys.x402_order(order_id))
        if order is None:
            raise PaymentOrderNotFoundError(order_id)
        if order["user_id"] != user_id:
            raise UnauthorizedError("Order belongs to another user", {"order_id": order_id})

        day = date.fromisoformat(order["date"])
        already = await self.checkins.get_check_in_for_day(user_id, day)
        if already is not None:
            await self._forget_order(order_id, user_id, day)
            return VerifyOutcome(success=True, already_checked_in=True, check_in=already)

        result = await self.x402.verify(order_id, user_id)
        if not result.success:
            self.logger.info("Payment not verified yet", order_id=order_id, reason=result.reason)
            return VerifyOutcome(success=False, reason=result.reason)

        check_in = await self._create_check_in(user_id, did, day, payment_order_id=order_id)
        already_checked_in = check_in.payment_order_id != order_id

        try:
            await self.x402.settle(order_id)
        except X402Error as e:
            # Verification already succeeded; settlement is repeatable upstream
            self.logger.warning("Payment settlement failed", order_id=order_id, error=e.message)

        await self._forget_order(order_id, user_id, day)
        return VerifyOutcome(success=True, already_checked_in=already_checked_in, check_in=check_in)

    async def _create_check_in(
        self, user_id: str, did: str, day: date, payment_order_id: Optional[str]
    ) -> CheckIn:
        try:
            return await self.checkins.create_daily_check_in(
                user_id, did, day=day, payment_order_id=payment_order_id
            )
        except AlreadyCheckedInError:
            check_in = await self.checkins.get_check_in_for_day(user_id, day)
            if check_in is None:
                raise
            return check_in

    async def _store_challenge(self, user_id: str, did: str, day: date, challenge: X402Challenge) -> None:
        remaining = (challenge.expires_at - datetime.now(timezone.utc)).total_seconds()
        ttl = max(int(remaining), 0) + self.verify_grace_seconds
        order: Dict[str, Any] = {
            "user_id": user_id,
            "did": did,
            "date": day.isoformat(),
            "challenge": challenge.to_dict(),
        }
        await self.redis.set_json(self._keys.x402_order(challenge.order_id), order, ex=ttl)
        await self.redis.client.set(self._keys.x402_pending(user_id, day), challenge.order_id, ex=ttl)

    async def _load_pending_challenge(self, user_id: str, day: date) -> Optional[X402Challenge]:
        pending_key = self._keys.x402_pending(user_id, day)
        order_id = await self.redis.client.get(pending_key)
        if not order_id:
            return None
        order = await self.redis.get_json(self._keys.x402_order(order_id))
        if order is None:
            return None
        challenge = X402Challenge.from_payload(order["challenge"])
        if challenge.is_expired:
            # Stop offering it; the order record stays until its TTL for late verifies
            await self.redis.client.delete(pending_key)
            return None
        return challenge

    async def _forget_order(self, order_id: str, user_id: str, day: date) -> None:
        await self.redis.client.delete(
            self._keys.x402_order(order_id), self._keys.x402_pending(user_id, day)
        )
