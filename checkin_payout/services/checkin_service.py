"""
Check-in orchestration: daily check-in creation and payout retries.

A check-in and its payout are written in one transaction; the payout job
is enqueued only after that commit. The relational store stays
authoritative, so a lost enqueue is repaired by worker startup recovery.
"""

from datetime import date, datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from checkin_payout.core.config import settings
from checkin_payout.core.database import atomic
from checkin_payout.core.exceptions import (
    AlreadyCheckedInError,
    AlreadyCompletedError,
    CheckInNotFoundError,
    PayoutNotFoundError,
    RetryLimitExceededError,
    UnauthorizedError,
    UserInactiveError,
    UserNotFoundError,
)
from checkin_payout.models import (
    ActivityAction,
    ActivityLog,
    ActivityStatus,
    CheckIn,
    CheckInStatus,
    PaymentStatus,
    PayoutStatus,
    TokenPayout,
    User,
)
from checkin_payout.models.base import generate_id
from checkin_payout.services.payout_queue import PayoutJob, PayoutQueue
from checkin_payout.services.rate_limiter import CheckInRateLimiter

logger = structlog.get_logger(__name__)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


class CheckInService:
    """Creates daily check-ins and re-queues failed payouts."""

    def __init__(
        self,
        session: AsyncSession,
        queue: PayoutQueue,
        rate_limiter: CheckInRateLimiter,
        reward_amount: Optional[str] = None,
        max_retries: Optional[int] = None,
    ):
        self.session = session
        self.queue = queue
        self.rate_limiter = rate_limiter
        self.reward_amount = reward_amount or settings.checkin_reward_amount
        self.max_retries = max_retries if max_retries is not None else settings.payout_max_retries
        self.logger = logger.bind(service="checkin_service")

    async def get_check_in_for_day(self, user_id: str, day: date) -> Optional[CheckIn]:
        result = await self.session.execute(
            select(CheckIn).where(CheckIn.user_id == user_id, CheckIn.checkin_date == day)
        )
        return result.scalar_one_or_none()

    async def get_check_in_by_order(self, order_id: str) -> Optional[CheckIn]:
        result = await self.session.execute(
            select(CheckIn).where(CheckIn.payment_order_id == order_id)
        )
        return result.scalar_one_or_none()

    async def _load_active_user(self, user_id: str, did: str) -> User:
        user = await self.session.get(User, user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        if not user.is_active:
            raise UserInactiveError(user_id, user.status.value)
        if user.did != did:
            raise UnauthorizedError("DID does not belong to user", {"user_id": user_id, "did": did})
        return user

    async def create_daily_check_in(
        self,
        user_id: str,
        did: str,
        *,
        day: Optional[date] = None,
        payment_order_id: Optional[str] = None,
    ) -> CheckIn:
        """
        Create today's check-in with a queued payout.

        Args:
            user_id: Checking-in user
            did: The user's DID
            day: UTC calendar day (defaults to today)
            payment_order_id: X402 order that paid for a gated check-in

        Returns:
            The PENDING check-in

        Raises:
            AlreadyCheckedInError: a check-in exists for (user, day)
            CheckInRateLimitedError: the DID's daily allowance is consumed
        """
        day = day or utc_today()
        await self._load_active_user(user_id, did)

        if await self.get_check_in_for_day(user_id, day) is not None:
            raise AlreadyCheckedInError(user_id, day.isoformat())

        await self.rate_limiter.consume(did, day)

        check_in = CheckIn(
            id=generate_id(),
            user_id=user_id,
            did=did,
            checkin_date=day,
            status=CheckInStatus.PENDING,
            payment_order_id=payment_order_id,
            payment_status=PaymentStatus.PAYMENT_SUCCESS if payment_order_id else None,
        )
        payout = TokenPayout(
            id=generate_id(),
            user_id=user_id,
            did=did,
            check_in_id=check_in.id,
            amount=self.reward_amount,
            status=PayoutStatus.QUEUED,
            retry_count=0,
        )
        check_in.payout_id = payout.id

        try:
            async with atomic(self.session):
                self.session.add(check_in)
                # Parent row first so the payout foreign key resolves
                await self.session.flush()
                self.session.add(payout)
                self.session.add(ActivityLog(
                    user_id=user_id,
                    did=did,
                    action=ActivityAction.CHECK_IN,
                    status=ActivityStatus.SUCCESS,
                    meta={
                        "checkInId": check_in.id,
                        "payoutId": payout.id,
                        "date": day.isoformat(),
                        "paymentOrderId": payment_order_id,
                    },
                ))
        except IntegrityError as e:
            await self.rate_limiter.release(did, day)
            self.logger.info("Concurrent check-in rejected", user_id=user_id, date=day.isoformat())
            raise AlreadyCheckedInError(user_id, day.isoformat()) from e
        except Exception:
            await self.rate_limiter.release(did, day)
            raise

        self.logger.info(
            "✅ Check-in created",
            user_id=user_id,
            check_in_id=check_in.id,
            payout_id=payout.id,
            date=day.isoformat(),
            gated=payment_order_id is not None
        )

        await self._enqueue(PayoutJob(payout_id=payout.id, did=did, amount=payout.amount))
        return check_in

    async def retry_payout(self, payout_id: str, user_id: str, *, as_admin: bool = False) -> TokenPayout:
        """
        Re-queue a payout.

        Raises:
            PayoutNotFoundError, UnauthorizedError, AlreadyCompletedError,
            RetryLimitExceededError
        """
        payout = await self.session.get(TokenPayout, payout_id)
        if payout is None:
            raise PayoutNotFoundError(payout_id)
        if not as_admin and payout.user_id != user_id:
            raise UnauthorizedError("Payout belongs to another user", {"payout_id": payout_id})
        if payout.retry_count >= self.max_retries:
            raise RetryLimitExceededError(payout_id, payout.retry_count, self.max_retries)
        if payout.status == PayoutStatus.SUCCESS:
            raise AlreadyCompletedError(payout_id)

        previous_status = payout.status
        async with atomic(self.session):
            payout.status = PayoutStatus.QUEUED
            payout.retry_count += 1
            payout.error_reason = None
            payout.processed_at = None

            if payout.check_in_id:
                check_in = await self.session.get(CheckIn, payout.check_in_id)
                if check_in is not None:
                    check_in.status = CheckInStatus.PENDING
                    check_in.error_reason = None

            self.session.add(ActivityLog(
                user_id=payout.user_id,
                did=payout.did,
                action=ActivityAction.RETRY,
                status=ActivityStatus.INFO,
                meta={
                    "payoutId": payout.id,
                    "retryCount": payout.retry_count,
                    "previousStatus": previous_status.value,
                    "requestedBy": user_id,
                },
            ))

        self.logger.info(
            "Payout re-queued",
            payout_id=payout.id,
            retry_count=payout.retry_count,
            previous_status=previous_status.value
        )

        await self._enqueue(PayoutJob(
            payout_id=payout.id,
            did=payout.did,
            amount=payout.amount,
            retry_count=payout.retry_count,
        ))
        return payout

    async def retry_check_in(self, check_in_id: str, user_id: str, *, as_admin: bool = False) -> TokenPayout:
        """Retry the payout linked to a check-in."""
        check_in = await self.session.get(CheckIn, check_in_id)
        if check_in is None:
            raise CheckInNotFoundError(check_in_id)
        if not as_admin and check_in.user_id != user_id:
            raise UnauthorizedError("Check-in belongs to another user", {"check_in_id": check_in_id})
        if not check_in.payout_id:
            raise PayoutNotFoundError(f"check-in {check_in_id}")
        return await self.retry_payout(check_in.payout_id, user_id, as_admin=as_admin)

    async def _enqueue(self, job: PayoutJob) -> None:
        try:
            await self.queue.enqueue(job)
        except Exception as e:
            # Row is committed as QUEUED; startup recovery re-enqueues it
            self.logger.error(
                "Failed to enqueue payout job",
                payout_id=job.payout_id,
                error=str(e)
            )
