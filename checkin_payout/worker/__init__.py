"""
Payout worker process: startup recovery and the queue consumer loop.
"""

from .payout_worker import PayoutWorker, WorkerContext, WorkerStats
from .recovery import PayoutRecovery, RecoveryReport

__all__ = [
    "PayoutWorker",
    "WorkerContext",
    "WorkerStats",
    "PayoutRecovery",
    "RecoveryReport",
]
