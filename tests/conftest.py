"""
Shared fixtures: sqlite store, fake Redis, fake chain and payment clients.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import fakeredis
import pytest

from checkin_payout.cache.redis_client import RedisClient
from checkin_payout.core.database import (
    DatabaseManager,
    close_database,
    get_session_maker,
    init_database,
)
from checkin_payout.core.exceptions import InsufficientFundsError
from checkin_payout.models import User, UserRole
from checkin_payout.services.checkin_service import CheckInService
from checkin_payout.services.payout_queue import PayoutQueue
from checkin_payout.services.rate_limiter import CheckInRateLimiter
from checkin_payout.services.token_transfer import TransferReceipt, TxStatus
from checkin_payout.services.x402_client import (
    DailyCheckInResult,
    VerifyResult,
    X402Challenge,
)
from checkin_payout.utils.validation import build_did
from checkin_payout.worker.payout_worker import PayoutWorker, WorkerContext

DAILY_REWARD = "10000000000000000000"
CHAIN_ID = 137


class FakeChainClient:
    """In-process stand-in for TokenTransferClient."""

    def __init__(self, balance: int = 10 ** 24):
        self.balance = balance
        self.transfers: List[Tuple[str, int]] = []
        self.statuses: Dict[str, TxStatus] = {}
        self.confirmation_error: Optional[Exception] = None
        self.broadcast_error: Optional[Exception] = None
        self.connect_calls = 0

    async def connect(self) -> None:
        self.connect_calls += 1

    async def ensure_balance(self, amount: int) -> int:
        if self.balance < amount:
            raise InsufficientFundsError(required=amount, available=self.balance)
        return self.balance

    async def send_transfer(self, to_address: str, amount: int) -> str:
        if self.broadcast_error is not None:
            raise self.broadcast_error
        self.transfers.append((to_address, amount))
        tx_hash = "0x" + format(len(self.transfers), "064x")
        self.statuses[tx_hash] = TxStatus.PENDING
        return tx_hash

    async def wait_for_confirmation(self, tx_hash: str) -> TransferReceipt:
        if self.confirmation_error is not None:
            self.statuses[tx_hash] = TxStatus.FAILED
            raise self.confirmation_error
        self.statuses[tx_hash] = TxStatus.SUCCESS
        return TransferReceipt(tx_hash=tx_hash, block_number=1, gas_used=52000)

    async def get_transaction_status(self, tx_hash: str) -> TxStatus:
        return self.statuses.get(tx_hash, TxStatus.NOT_FOUND)

    async def describe_amount(self, amount: int) -> str:
        return str(amount)

    async def close(self) -> None:
        pass


class FakeX402Client:
    """Scriptable stand-in for X402Client."""

    def __init__(self):
        self.already_checked_in = False
        self.verify_results: List[VerifyResult] = []
        self.issued: List[X402Challenge] = []
        self.verify_calls: List[str] = []
        self.settled: List[str] = []
        self.settle_error: Optional[Exception] = None

    async def daily_checkin(self, merchant_user_id, day) -> DailyCheckInResult:
        if self.already_checked_in:
            return DailyCheckInResult(already_checked_in=True)
        challenge = X402Challenge(
            order_id=f"order-{len(self.issued) + 1}",
            payment_address="0x" + "ab" * 20,
            price_amount="0.01",
            blockchain_name="polygon",
            token_symbol="USDT",
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=30),
        )
        self.issued.append(challenge)
        return DailyCheckInResult(already_checked_in=False, challenge=challenge)

    async def verify(self, order_id, merchant_user_id) -> VerifyResult:
        self.verify_calls.append(order_id)
        if self.verify_results:
            return self.verify_results.pop(0)
        return VerifyResult(success=True)

    async def settle(self, order_id) -> None:
        if self.settle_error is not None:
            raise self.settle_error
        self.settled.append(order_id)

    async def close(self) -> None:
        pass


@pytest.fixture
async def session_factory(tmp_path):
    """Fresh sqlite database per test."""
    await init_database(f"sqlite+aiosqlite:///{tmp_path / 'checkin.db'}")
    await DatabaseManager.create_tables()
    yield get_session_maker()
    await close_database()


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def redis_client():
    client = RedisClient(client=fakeredis.FakeAsyncRedis(decode_responses=True))
    yield client
    await client.client.flushall()
    await client.disconnect()


@pytest.fixture
def queue(redis_client):
    return PayoutQueue(redis_client)


@pytest.fixture
def rate_limiter(redis_client):
    return CheckInRateLimiter(redis_client, allowance=1)


@pytest.fixture
def checkin_service(session, queue, rate_limiter):
    return CheckInService(session, queue, rate_limiter, reward_amount=DAILY_REWARD, max_retries=3)


@pytest.fixture
def chain():
    return FakeChainClient()


@pytest.fixture
def x402():
    return FakeX402Client()


@pytest.fixture
def worker(session_factory, queue, chain):
    ctx = WorkerContext(
        session_factory=session_factory,
        queue=queue,
        chain=chain,
        max_retries=3,
        dequeue_timeout=0.1,
        idle_backoff=0.05,
    )
    return PayoutWorker(ctx)


@pytest.fixture
def make_user(session_factory):
    """Persist a user; returns it detached with its attributes loaded."""
    counter = {"n": 0}

    async def _make_user(role: UserRole = UserRole.USER, wallet: Optional[str] = None, **kwargs) -> User:
        counter["n"] += 1
        wallet = (wallet or "0x" + format(counter["n"], "040x")).lower()
        async with session_factory() as session:
            user = User(
                did=build_did(CHAIN_ID, wallet),
                wallet_address=wallet,
                chain_id=CHAIN_ID,
                role=role,
                **kwargs,
            )
            session.add(user)
            await session.commit()
            return user

    return _make_user
