"""
Startup recovery for the payout worker.

Runs before the worker claims anything:
1. Expire check-ins stuck in PENDING past the timeout window
2. Drop processing-list entries left by a crashed worker
3. Reset recent QUEUED/PROCESSING payouts to QUEUED and re-enqueue them

Payouts older than the recovery window are left for manual intervention.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkin_payout.core.config import settings
from checkin_payout.core.database import atomic
from checkin_payout.core.exceptions import InvalidJobError
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
from checkin_payout.services.payout_queue import PayoutJob, PayoutQueue

logger = structlog.get_logger(__name__)


@dataclass
class RecoveryReport:
    expired_check_ins: int = 0
    cleared_processing: int = 0
    requeued_payouts: int = 0


class PayoutRecovery:
    """Brings store and queue back in line after a restart."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: PayoutQueue,
        recovery_window_hours: Optional[int] = None,
        pending_timeout_hours: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.recovery_window = timedelta(
            hours=recovery_window_hours or settings.payout_recovery_window_hours
        )
        self.pending_timeout_hours = pending_timeout_hours or settings.checkin_pending_timeout_hours
        self.logger = logger.bind(service="payout_recovery")

    @property
    def expiry_reason(self) -> str:
        return f"Check-in expired - timeout after {self.pending_timeout_hours} hours"

    async def run(self, now: Optional[datetime] = None) -> RecoveryReport:
        now = now or utcnow()
        report = RecoveryReport(
            expired_check_ins=await self.expire_stale_check_ins(now),
            cleared_processing=await self.clear_processing_leftovers(),
            requeued_payouts=await self.requeue_unfinished_payouts(now),
        )
        self.logger.info(
            "Startup recovery finished",
            expired_check_ins=report.expired_check_ins,
            cleared_processing=report.cleared_processing,
            requeued_payouts=report.requeued_payouts
        )
        return report

    async def expire_stale_check_ins(self, now: Optional[datetime] = None) -> int:
        """Fail PENDING check-ins untouched for longer than the timeout."""
        cutoff = (now or utcnow()) - timedelta(hours=self.pending_timeout_hours)
        expired = 0

        async with self.session_factory() as session:
            result = await session.execute(
                select(CheckIn).where(
                    CheckIn.status == CheckInStatus.PENDING,
                    CheckIn.updated_at < cutoff,
                )
            )
            for check_in in result.scalars().all():
                payout = await session.get(TokenPayout, check_in.payout_id) if check_in.payout_id else None

                async with atomic(session):
                    if payout is not None and payout.status == PayoutStatus.SUCCESS:
                        # Payout landed but the check-in update was lost
                        check_in.status = CheckInStatus.SUCCESS
                        self.logger.warning("Reconciled pending check-in with paid payout",
                                            check_in_id=check_in.id, payout_id=payout.id)
                        continue

                    check_in.status = CheckInStatus.FAILED
                    check_in.error_reason = self.expiry_reason
                    if payout is not None:
                        payout.status = PayoutStatus.FAILED
                        payout.error_reason = self.expiry_reason
                        payout.processed_at = utcnow()

                    session.add(ActivityLog(
                        user_id=check_in.user_id,
                        did=check_in.did,
                        action=ActivityAction.CHECK_IN,
                        status=ActivityStatus.FAILURE,
                        meta={
                            "checkInId": check_in.id,
                            "payoutId": check_in.payout_id,
                            "reason": self.expiry_reason,
                        },
                    ))

                expired += 1
                self.logger.warning("Expired stale check-in", check_in_id=check_in.id, payout_id=check_in.payout_id)

        return expired

    async def clear_processing_leftovers(self) -> int:
        """Remove jobs claimed by a previous process; the store rescan supersedes them."""
        leftovers = await self.queue.clear_processing()
        for raw in leftovers:
            try:
                payout_id = PayoutJob.parse(raw).payout_id
            except InvalidJobError:
                payout_id = None
            self.logger.warning("Discarding leftover processing job", payout_id=payout_id, raw=raw[:200])
        return len(leftovers)

    async def requeue_unfinished_payouts(self, now: Optional[datetime] = None) -> int:
        """Reset recent QUEUED/PROCESSING payouts and enqueue fresh jobs."""
        cutoff = (now or utcnow()) - self.recovery_window
        requeued = 0

        async with self.session_factory() as session:
            result = await session.execute(
                select(TokenPayout)
                .where(
                    TokenPayout.status.in_([PayoutStatus.QUEUED, PayoutStatus.PROCESSING]),
                    or_(TokenPayout.created_at >= cutoff, TokenPayout.updated_at >= cutoff),
                )
                .order_by(TokenPayout.created_at)
            )
            payouts = list(result.scalars().all())

            for payout in payouts:
                previous = payout.status
                async with atomic(session):
                    payout.status = PayoutStatus.QUEUED
                    payout.error_reason = None

                await self.queue.enqueue(PayoutJob(
                    payout_id=payout.id,
                    did=payout.did,
                    amount=payout.amount,
                    retry_count=payout.retry_count or None,
                ))
                requeued += 1
                self.logger.info(
                    "Recovered payout",
                    payout_id=payout.id,
                    previous_status=previous.value,
                    has_tx_hash=payout.tx_hash is not None
                )

        return requeued
