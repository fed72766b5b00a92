"""
Payout worker: claims payout jobs and settles them on-chain.

Per job:
1. Claim from the queue (atomic move onto the processing list)
2. Drop missing, completed or stale payouts
3. Mark PROCESSING
4. Resolve the recipient wallet
5. Connect to the chain RPC (bounded retry)
6. Check custodial balance
7-8. Price gas and broadcast, persisting the tx hash right away
9. Await confirmation and record SUCCESS or FAILED atomically
10. Acknowledge the job

A payout that already carries a tx hash is checked on-chain before
anything is resent, so redelivered or recovered jobs never pay twice.
"""

import asyncio
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional, Dict, Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkin_payout.core.config import settings
from checkin_payout.core.database import atomic
from checkin_payout.core.exceptions import (
    CheckinPayoutException,
    InvalidJobError,
    UserNotFoundError,
    WalletMissingError,
)
from checkin_payout.models import (
    ActivityAction,
    ActivityLog,
    ActivityStatus,
    CheckIn,
    CheckInStatus,
    PayoutStatus,
    TokenPayout,
    User,
)
from checkin_payout.models.base import utcnow
from checkin_payout.services.payout_queue import ClaimedJob, PayoutJob, PayoutQueue
from checkin_payout.services.token_transfer import TokenTransferClient, TxStatus

logger = structlog.get_logger(__name__)


@dataclass
class WorkerStats:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    dropped: int = 0
    interrupted: int = 0
    started_at: Optional[datetime] = None
    last_processed_at: Optional[datetime] = None


@dataclass
class WorkerContext:
    """Everything the processing loop needs; no module-level state."""
    session_factory: async_sessionmaker[AsyncSession]
    queue: PayoutQueue
    chain: TokenTransferClient
    max_retries: int = field(default_factory=lambda: settings.payout_max_retries)
    dequeue_timeout: float = field(default_factory=lambda: settings.payout_dequeue_timeout)
    idle_backoff: float = field(default_factory=lambda: settings.payout_idle_backoff)
    stats: WorkerStats = field(default_factory=WorkerStats)
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)


def error_reason(error: Exception) -> str:
    if isinstance(error, CheckinPayoutException):
        return error.message
    return str(error) or error.__class__.__name__


class PayoutWorker:
    """Single consumer loop over the payout queue."""

    def __init__(self, ctx: WorkerContext):
        self.ctx = ctx
        self.logger = logger.bind(service="payout_worker")
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the consumer loop in the background."""
        if self.running:
            self.logger.warning("Payout worker already running")
            return
        self.ctx.stop_event.clear()
        self.ctx.stats.started_at = utcnow()
        self._task = asyncio.create_task(self._run_loop(), name="payout-worker")
        self.logger.info("🚀 Payout worker started")

    def drain(self) -> None:
        """Stop claiming new jobs; the in-flight job runs to completion."""
        if not self.ctx.stop_event.is_set():
            self.logger.info("Payout worker draining")
        self.ctx.stop_event.set()

    async def stop(self, grace: Optional[float] = None) -> None:
        """Drain, wait up to `grace` seconds for the in-flight job, then cancel."""
        grace = settings.worker_shutdown_grace if grace is None else grace
        self.drain()
        if self._task is None:
            return

        if not self._task.done():
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=grace)
            except asyncio.TimeoutError:
                self.logger.warning("Grace period elapsed, cancelling in-flight payout", grace=grace)
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
        self.logger.info("Payout worker stopped", stats=self.get_status()["stats"])

    async def wait(self) -> None:
        """Block until the loop exits; cancelling the waiter leaves the loop running."""
        if self._task is not None:
            await asyncio.shield(self._task)

    def get_status(self) -> Dict[str, Any]:
        stats = asdict(self.ctx.stats)
        for key in ("started_at", "last_processed_at"):
            if stats[key] is not None:
                stats[key] = stats[key].isoformat()
        return {
            "running": self.running,
            "draining": self.ctx.stop_event.is_set(),
            "stats": stats,
        }

    async def _run_loop(self) -> None:
        while not self.ctx.stop_event.is_set():
            try:
                handled = await self.run_once()
            except Exception as e:
                self.logger.error("Payout worker iteration failed", error=str(e), exc_info=True)
                handled = False

            if not handled:
                await self._idle_wait()

    async def _idle_wait(self) -> None:
        try:
            await asyncio.wait_for(self.ctx.stop_event.wait(), timeout=self.ctx.idle_backoff)
        except asyncio.TimeoutError:
            pass

    async def run_once(self) -> bool:
        """Claim and process one job. Returns False when the queue was empty."""
        try:
            claimed = await self.ctx.queue.dequeue(timeout=self.ctx.dequeue_timeout)
        except InvalidJobError as e:
            self.logger.warning("Dropping invalid payout job", reason=e.details.get("reason"), raw=e.details.get("raw"))
            self.ctx.stats.dropped += 1
            await self.ctx.queue.acknowledge(e.raw)
            return True

        if claimed is None:
            return False

        await self.process_job(claimed)
        return True

    async def process_job(self, claimed: ClaimedJob) -> None:
        """Run one claimed job and acknowledge it once a branch completes."""
        job = claimed.job
        log = self.logger.bind(payout_id=job.payout_id, did=job.did, retry_count=job.retry_count)
        completed = False
        try:
            await self._process(job, log)
            completed = True
        except Exception as e:
            # Store or queue unavailable: leave the job claimed for startup recovery
            self.ctx.stats.interrupted += 1
            log.error("Payout processing interrupted, job kept for recovery", error=str(e), exc_info=True)
        finally:
            self.ctx.stats.processed += 1
            self.ctx.stats.last_processed_at = utcnow()
            if completed:
                await self.ctx.queue.acknowledge(claimed.raw)

    async def _process(self, job: PayoutJob, log) -> None:
        async with self.ctx.session_factory() as session:
            payout = await session.get(TokenPayout, job.payout_id)
            if payout is None:
                log.warning("Payout not found, dropping job")
                self.ctx.stats.dropped += 1
                return
            if payout.status == PayoutStatus.SUCCESS:
                log.info("Payout already completed, dropping duplicate delivery", tx_hash=payout.tx_hash)
                self.ctx.stats.dropped += 1
                return
            if payout.status != PayoutStatus.QUEUED:
                log.warning("Payout not queued, dropping stale job", status=payout.status.value)
                self.ctx.stats.dropped += 1
                return
            if payout.amount != job.amount:
                log.warning("Job amount differs from stored payout, using stored amount",
                            job_amount=job.amount, payout_amount=payout.amount)

            async with atomic(session):
                payout.status = PayoutStatus.PROCESSING
            await self.ctx.queue.mark_as_processing(payout.id)
            log.info("Processing payout", amount=payout.amount)

            tx_hash: Optional[str] = None
            broadcast = False
            try:
                recipient = await self._resolve_recipient(session, payout)
                await self.ctx.chain.connect()
                tx_hash = await self._reusable_transaction(payout, log)
                if tx_hash is None:
                    amount = int(payout.amount)
                    await self.ctx.chain.ensure_balance(amount)
                    tx_hash = await self.ctx.chain.send_transfer(recipient, amount)
                    broadcast = True
            except Exception as e:
                await self._record_failure(session, payout, e, log)
                return

            if broadcast:
                async with atomic(session):
                    payout.tx_hash = tx_hash
                log.info("Payout broadcast", tx_hash=tx_hash)

            try:
                await self.ctx.chain.wait_for_confirmation(tx_hash)
            except Exception as e:
                await self._record_failure(session, payout, e, log)
                return

            await self._record_success(session, payout, tx_hash, log)

    async def _resolve_recipient(self, session: AsyncSession, payout: TokenPayout) -> str:
        user = await session.get(User, payout.user_id)
        if user is None:
            raise UserNotFoundError(payout.user_id)
        if not user.wallet_address:
            raise WalletMissingError(payout.user_id)
        return user.wallet_address

    async def _reusable_transaction(self, payout: TokenPayout, log) -> Optional[str]:
        """Return the stored tx hash if it landed or is still pending; None means send."""
        if not payout.tx_hash:
            return None

        status = await self.ctx.chain.get_transaction_status(payout.tx_hash)
        if status in (TxStatus.SUCCESS, TxStatus.PENDING):
            log.info("Reusing previously broadcast transaction", tx_hash=payout.tx_hash, chain_status=status.value)
            return payout.tx_hash

        log.warning("Previous transaction did not land, resending", tx_hash=payout.tx_hash, chain_status=status.value)
        return None

    async def _record_success(self, session: AsyncSession, payout: TokenPayout, tx_hash: str, log) -> None:
        now = utcnow()
        async with atomic(session):
            payout.status = PayoutStatus.SUCCESS
            payout.tx_hash = tx_hash
            payout.processed_at = now
            payout.error_reason = None

            check_in = await session.get(CheckIn, payout.check_in_id) if payout.check_in_id else None
            if check_in is not None:
                check_in.status = CheckInStatus.SUCCESS
                check_in.error_reason = None

            user = await session.get(User, payout.user_id)
            if user is not None:
                user.add_reward(payout.amount)
                user.last_checkin_at = now

            session.add(ActivityLog(
                user_id=payout.user_id,
                did=payout.did,
                action=ActivityAction.PAYOUT,
                status=ActivityStatus.SUCCESS,
                meta={
                    "payoutId": payout.id,
                    "checkInId": payout.check_in_id,
                    "txHash": tx_hash,
                    "amount": payout.amount,
                },
            ))

        self.ctx.stats.succeeded += 1
        await self._update_queue_status(self.ctx.queue.mark_as_completed, payout.id, tx_hash, log)
        log.info(
            "✅ Payout completed",
            tx_hash=tx_hash,
            amount=payout.amount,
            tokens=await self.ctx.chain.describe_amount(int(payout.amount))
        )

    async def _record_failure(self, session: AsyncSession, payout: TokenPayout, error: Exception, log) -> None:
        reason = error_reason(error)
        permanent = payout.retry_count >= self.ctx.max_retries
        status = PayoutStatus.FAILED_PERMANENT if permanent else PayoutStatus.FAILED

        async with atomic(session):
            payout.status = status
            payout.error_reason = reason
            payout.processed_at = utcnow()

            check_in = await session.get(CheckIn, payout.check_in_id) if payout.check_in_id else None
            if check_in is not None:
                check_in.status = CheckInStatus.FAILED
                check_in.error_reason = reason

            session.add(ActivityLog(
                user_id=payout.user_id,
                did=payout.did,
                action=ActivityAction.PAYOUT,
                status=ActivityStatus.FAILURE,
                meta={
                    "payoutId": payout.id,
                    "checkInId": payout.check_in_id,
                    "amount": payout.amount,
                    "error": reason,
                    "errorCode": getattr(error, "code", None),
                    "retryCount": payout.retry_count,
                    "txHash": payout.tx_hash,
                },
            ))

        self.ctx.stats.failed += 1
        await self._update_queue_status(self.ctx.queue.mark_as_failed, payout.id, reason, log)
        log.error(
            "❌ Payout failed",
            reason=reason,
            status=status.value,
            error_code=getattr(error, "code", None)
        )

    async def _update_queue_status(self, update, payout_id: str, value: str, log) -> None:
        # The store already holds the outcome; the status hash is informational
        try:
            await update(payout_id, value)
        except Exception as e:
            log.warning("Failed to update queue status hash", error=str(e))
