"""
Main entry point for the payout worker service.
Runs startup recovery, then consumes the payout queue until signalled.
"""

import asyncio
import signal
from typing import Optional

import structlog

from checkin_payout.cache.redis_client import RedisClient
from checkin_payout.core.config import settings
from checkin_payout.core.database import init_database, close_database, get_session_maker
from checkin_payout.core.logging import setup_logging
from checkin_payout.services.payout_queue import PayoutQueue
from checkin_payout.services.token_transfer import TokenTransferClient
from .payout_worker import PayoutWorker, WorkerContext
from .recovery import PayoutRecovery

logger = structlog.get_logger(__name__)


class WorkerMain:
    """Payout worker service coordinator."""

    def __init__(self):
        self.redis: Optional[RedisClient] = None
        self.chain: Optional[TokenTransferClient] = None
        self.worker: Optional[PayoutWorker] = None
        self._shutdown = asyncio.Event()
        self._stopped = False

    async def initialize(self) -> None:
        """Connect store, queue and chain client, then run recovery."""
        logger.info("Initializing payout worker service", environment=settings.environment)

        await init_database()
        self.redis = RedisClient()
        await self.redis.connect()
        self.chain = TokenTransferClient()

        queue = PayoutQueue(self.redis)
        session_factory = get_session_maker()

        await PayoutRecovery(session_factory, queue).run()

        self.worker = PayoutWorker(WorkerContext(
            session_factory=session_factory,
            queue=queue,
            chain=self.chain,
        ))
        logger.info("Payout worker service initialized", sender=self.chain.sender_address)

    async def start(self) -> None:
        """Run until a shutdown is requested or the worker loop exits."""
        await self.worker.start()
        waiter = asyncio.create_task(self._shutdown.wait())
        loop_task = asyncio.create_task(self.worker.wait())
        done, pending = await asyncio.wait({waiter, loop_task}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            if task is loop_task and task.exception() is not None:
                logger.error("Payout worker loop crashed", error=str(task.exception()))

    def request_shutdown(self, reason: str) -> None:
        if not self._shutdown.is_set():
            logger.info("Shutdown requested", reason=reason)
            if self.worker:
                self.worker.drain()
            self._shutdown.set()

    async def stop(self) -> None:
        """Drain, give in-flight work the grace period, close connections."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping payout worker service")

        if self.worker:
            await self.worker.stop(grace=settings.worker_shutdown_grace)
        if self.chain:
            await self.chain.close()
        await close_database()
        if self.redis:
            await self.redis.disconnect()

        logger.info("Payout worker service stopped")


async def main() -> None:
    """Main function to run the payout worker service."""
    setup_logging()
    service = WorkerMain()
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, service.request_shutdown, sig.name)

    def exception_handler(loop, context):
        logger.error(
            "Unhandled error in event loop",
            message=context.get("message"),
            error=str(context.get("exception"))
        )
        service.request_shutdown("unhandled error")

    loop.set_exception_handler(exception_handler)

    try:
        await service.initialize()
        await service.start()
    except Exception as e:
        logger.error("Payout worker service failed", error=str(e), exc_info=True)
        raise
    finally:
        await service.stop()


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
