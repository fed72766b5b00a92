"""
Operator commands for the check-in payout backend.
"""

import asyncio
import sys

import typer
from rich.console import Console
from rich.table import Table

from alembic.config import Config
from alembic import command
from checkin_payout.cache.redis_client import RedisClient
from checkin_payout.core.database import (
    DatabaseManager,
    close_database,
    get_async_session,
    get_session_maker,
    init_database,
)
from checkin_payout.core.exceptions import CheckinPayoutException
from checkin_payout.core.logging import setup_logging
from checkin_payout.services.checkin_service import CheckInService
from checkin_payout.services.payout_queue import PayoutQueue
from checkin_payout.services.rate_limiter import CheckInRateLimiter
from checkin_payout.worker.recovery import PayoutRecovery

console = Console()
app = typer.Typer(help="Check-in payout management commands")


async def _with_redis(action):
    setup_logging()
    redis = RedisClient()
    await redis.connect()
    try:
        return await action(redis)
    finally:
        await redis.disconnect()


@app.command()
def init():
    """Create all tables directly (development databases)."""
    async def _init():
        setup_logging()
        await init_database()
        await DatabaseManager.create_tables()
        await close_database()
        console.print("✅ Database initialized successfully!")

    asyncio.run(_init())


@app.command()
def upgrade(revision: str = "head"):
    """Apply migrations."""
    command.upgrade(Config("alembic.ini"), revision)
    console.print(f"✅ Database upgraded to: {revision}")


@app.command()
def downgrade(revision: str):
    """Downgrade database to specific revision."""
    command.downgrade(Config("alembic.ini"), revision)
    console.print(f"⬇️ Database downgraded to: {revision}")


@app.command()
def health():
    """Check database and Redis connectivity."""
    async def _health(redis: RedisClient):
        await init_database()
        try:
            db_ok = await DatabaseManager.health_check()
        finally:
            await close_database()
        redis_status = await redis.health_check()
        return db_ok, redis_status

    db_ok, redis_status = asyncio.run(_with_redis(_health))

    table = Table(title="Service Health")
    table.add_column("Component", style="cyan")
    table.add_column("Status", style="green")
    table.add_row("Database", "✅ Connected" if db_ok else "❌ Disconnected")
    table.add_row("Redis", f"✅ {redis_status.get('ping_ms')} ms" if redis_status.get("status") == "healthy" else "❌ Unavailable")
    console.print(table)

    if not db_ok or redis_status.get("status") != "healthy":
        sys.exit(1)


@app.command()
def queue(limit: int = typer.Option(10, help="Failed jobs to show")):
    """Show payout queue depth and recent failures."""
    async def _queue(redis: RedisClient):
        payouts = PayoutQueue(redis)
        return (
            await payouts.get_queue_length(),
            await payouts.get_processing_length(),
            await payouts.get_failed_jobs(limit),
        )

    pending, processing, failed = asyncio.run(_with_redis(_queue))

    console.print(f"📬 Pending: {pending}   ⚙️ Processing: {processing}")
    table = Table(title="Recent Failures")
    table.add_column("Payout", style="cyan")
    table.add_column("Error", style="red")
    table.add_column("Failed At")
    for job in failed:
        table.add_row(job.get("payoutId", "?"), job.get("error", ""), job.get("failedAt", ""))
    console.print(table)


@app.command()
def recover():
    """Run startup recovery without starting the worker."""
    async def _recover(redis: RedisClient):
        await init_database()
        try:
            return await PayoutRecovery(get_session_maker(), PayoutQueue(redis)).run()
        finally:
            await close_database()

    report = asyncio.run(_with_redis(_recover))
    console.print(
        f"🔄 Expired check-ins: {report.expired_check_ins}, "
        f"cleared processing: {report.cleared_processing}, "
        f"requeued payouts: {report.requeued_payouts}"
    )


@app.command()
def retry(payout_id: str):
    """Re-queue a failed payout as an operator."""
    async def _retry(redis: RedisClient):
        await init_database()
        try:
            async with get_async_session() as session:
                service = CheckInService(session, PayoutQueue(redis), CheckInRateLimiter(redis))
                return await service.retry_payout(payout_id, user_id="operator", as_admin=True)
        finally:
            await close_database()

    try:
        payout = asyncio.run(_with_redis(_retry))
    except CheckinPayoutException as e:
        console.print(f"❌ {e.code}: {e.message}")
        sys.exit(1)

    console.print(f"✅ Payout {payout.id} re-queued (retry {payout.retry_count})")


if __name__ == "__main__":
    app()
