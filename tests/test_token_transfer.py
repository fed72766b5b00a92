"""
Tests for the ERC20 transfer client with a stubbed web3 eth namespace.
"""

from types import SimpleNamespace

import pytest
from eth_account import Account
from web3 import Web3
from web3.exceptions import TransactionNotFound

from checkin_payout.core.exceptions import (
    ConfigurationError,
    RpcConnectionError,
    TransactionRevertedError,
)
from checkin_payout.services import token_transfer
from checkin_payout.services.token_transfer import TokenTransferClient, TxStatus, backoff_delay

TOKEN = "0x" + "11" * 20
GWEI = 10 ** 9


async def _value(value):
    return value


class StubEth:
    def __init__(self, base_fee=0, priority_fee=0, receipts=None, transactions=None, block_number=0):
        self.base_fee = base_fee
        self.priority_fee = priority_fee
        self.receipts = receipts or {}
        self.transactions = transactions or {}
        self._block_number = block_number

    async def get_block(self, tag):
        return {"baseFeePerGas": self.base_fee}

    @property
    def max_priority_fee(self):
        return _value(self.priority_fee)

    @property
    def block_number(self):
        return _value(self._block_number)

    async def get_transaction_receipt(self, tx_hash):
        if tx_hash not in self.receipts:
            raise TransactionNotFound(f"no receipt for {tx_hash}")
        return self.receipts[tx_hash]

    async def get_transaction(self, tx_hash):
        if tx_hash not in self.transactions:
            raise TransactionNotFound(f"unknown {tx_hash}")
        return self.transactions[tx_hash]

    async def wait_for_transaction_receipt(self, tx_hash, timeout=None):
        return self.receipts[tx_hash]


@pytest.fixture
def client():
    return TokenTransferClient(
        rpc_url="http://127.0.0.1:1",
        private_key=Account.create().key.hex(),
        token_address=TOKEN,
        chain_id=137,
    )


def with_eth(client, eth):
    client._w3 = SimpleNamespace(eth=eth)
    return client


def test_backoff_delay_is_capped():
    assert [backoff_delay(n) for n in range(6)] == [1, 2, 4, 8, 10, 10]


def test_requires_signer_and_token():
    with pytest.raises(ConfigurationError):
        TokenTransferClient(rpc_url="http://127.0.0.1:1", private_key=None, token_address=TOKEN)


@pytest.mark.asyncio
async def test_connect_gives_up_after_retry_budget(client, monkeypatch):
    monkeypatch.setattr(token_transfer, "backoff_delay", lambda attempt: 0)
    client.rpc_timeout = 2

    with pytest.raises(RpcConnectionError) as exc_info:
        await client.connect()
    assert exc_info.value.code == "RPC_CONNECTION_ERROR"


@pytest.mark.asyncio
async def test_gas_fees_respect_floor(client):
    with_eth(client, StubEth(base_fee=1 * GWEI, priority_fee=1 * GWEI))
    fees = await client.compute_gas_fees()
    assert fees == {"maxFeePerGas": 32 * GWEI, "maxPriorityFeePerGas": 30 * GWEI}

    with_eth(client, StubEth(base_fee=100 * GWEI, priority_fee=50 * GWEI))
    fees = await client.compute_gas_fees()
    assert fees == {"maxFeePerGas": 250 * GWEI, "maxPriorityFeePerGas": 50 * GWEI}


@pytest.mark.asyncio
async def test_transaction_status_lookup(client):
    with_eth(client, StubEth(
        receipts={"0xok": {"status": 1}, "0xbad": {"status": 0}},
        transactions={"0xpending": {"hash": "0xpending"}},
    ))

    assert await client.get_transaction_status("0xok") == TxStatus.SUCCESS
    assert await client.get_transaction_status("0xbad") == TxStatus.FAILED
    assert await client.get_transaction_status("0xpending") == TxStatus.PENDING
    assert await client.get_transaction_status("0xgone") == TxStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_reverted_receipt_raises(client):
    with_eth(client, StubEth(receipts={"0xbad": {"status": 0, "blockNumber": 5}}))

    with pytest.raises(TransactionRevertedError) as exc_info:
        await client.wait_for_confirmation("0xbad")
    assert exc_info.value.tx_hash == "0xbad"


@pytest.mark.asyncio
async def test_confirmed_receipt(client):
    client.confirmations = 2
    with_eth(client, StubEth(receipts={"0xok": {"status": 1, "blockNumber": 5, "gasUsed": 51000}}, block_number=6))

    receipt = await client.wait_for_confirmation("0xok")

    assert receipt.block_number == 5
    assert receipt.gas_used == 51000


@pytest.mark.asyncio
async def test_describe_amount(client):
    client._decimals = 18
    assert await client.describe_amount(10 * 10 ** 18) == "10"
    assert await client.describe_amount(15 * 10 ** 17) == "1.5"


def test_sender_is_checksummed(client):
    assert Web3.is_checksum_address(client.sender_address)
