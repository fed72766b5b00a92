"""
ERC20 payout transfers on an EVM chain.

This service provides:
- RPC connection with bounded exponential-backoff retries
- Custodial balance checks before broadcasting
- EIP-1559 gas pricing with a network-specific floor
- Signing, broadcasting and confirmation tracking
- Transaction status lookups used to avoid double-sends
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any

import structlog
from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound, TimeExhausted

from checkin_payout.core.config import settings, ChainConfig
from checkin_payout.core.exceptions import (
    BlockchainError,
    ConfigurationError,
    InsufficientFundsError,
    RpcConnectionError,
    TransactionRevertedError,
)

logger = structlog.get_logger(__name__)

MAX_BACKOFF_SECONDS = 10.0


class TxStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"
    NOT_FOUND = "not_found"


@dataclass
class TransferReceipt:
    """Confirmed transfer summary."""
    tx_hash: str
    block_number: int
    gas_used: int


def backoff_delay(attempt: int, base: float = 1.0) -> float:
    """Delay before retry `attempt` (0-based): base * 2^n capped at 10s."""
    return min(base * (2 ** attempt), MAX_BACKOFF_SECONDS)


class TokenTransferClient:
    """Custodial ERC20 sender for daily rewards."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        private_key: Optional[str] = None,
        token_address: Optional[str] = None,
        chain_id: Optional[int] = None,
    ):
        self.rpc_url = rpc_url or settings.chain_rpc_url
        self.chain_id = chain_id or settings.chain_id
        private_key = private_key or settings.admin_private_key
        token_address = token_address or settings.token_contract_address
        if not private_key or not token_address:
            raise ConfigurationError(
                "admin_private_key and token_contract_address must be configured"
            )

        self._account = Account.from_key(private_key)
        self._token_address = Web3.to_checksum_address(token_address)
        self._w3: Optional[AsyncWeb3] = None
        self._contract = None
        self._decimals: Optional[int] = None
        # One in-flight broadcast per signer keeps nonces sequential
        self._nonce_lock = asyncio.Lock()

        self.max_retries = settings.chain_rpc_max_retries
        self.rpc_timeout = settings.chain_rpc_timeout
        self.gas_floor_wei = Web3.to_wei(settings.chain_min_gas_price_gwei, "gwei")
        self.gas_limit = settings.chain_gas_limit
        self.confirmations = settings.chain_confirmations
        self.receipt_timeout = settings.chain_receipt_timeout
        self.logger = logger.bind(service="token_transfer", sender=self._account.address)

    @property
    def sender_address(self) -> str:
        return self._account.address

    @property
    def w3(self) -> AsyncWeb3:
        if self._w3 is None:
            raise RuntimeError("Chain client not connected. Call connect() first.")
        return self._w3

    async def connect(self) -> None:
        """Connect to the RPC endpoint, retrying transient failures."""
        if self._w3 is not None:
            return

        last_error = "unknown"
        for attempt in range(self.max_retries):
            try:
                w3 = AsyncWeb3(
                    AsyncWeb3.AsyncHTTPProvider(
                        self.rpc_url, request_kwargs={"timeout": self.rpc_timeout}
                    )
                )
                connected = await asyncio.wait_for(w3.is_connected(), timeout=self.rpc_timeout)
                if connected:
                    self._w3 = w3
                    self._contract = w3.eth.contract(
                        address=self._token_address, abi=ChainConfig.ERC20_ABI
                    )
                    self.logger.info("Connected to chain RPC", rpc_url=self.rpc_url, attempt=attempt + 1)
                    return
                last_error = "RPC endpoint not reachable"
            except Exception as e:
                last_error = str(e) or e.__class__.__name__

            if attempt < self.max_retries - 1:
                delay = backoff_delay(attempt)
                self.logger.warning(
                    "Chain RPC connection failed, retrying",
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay=delay,
                    error=last_error
                )
                await asyncio.sleep(delay)

        raise RpcConnectionError(self.rpc_url, self.max_retries, last_error)

    async def get_balance(self, address: Optional[str] = None) -> int:
        """Token balance in base units (defaults to the custodial wallet)."""
        owner = Web3.to_checksum_address(address or self.sender_address)
        return int(await self._contract.functions.balanceOf(owner).call())

    async def get_decimals(self) -> int:
        if self._decimals is None:
            self._decimals = int(await self._contract.functions.decimals().call())
        return self._decimals

    async def ensure_balance(self, amount: int) -> int:
        """Raise InsufficientFundsError when the custodial wallet cannot pay `amount`."""
        balance = await self.get_balance()
        if balance < amount:
            self.logger.error("Custodial wallet underfunded", required=str(amount), available=str(balance))
            raise InsufficientFundsError(required=amount, available=balance)
        return balance

    async def compute_gas_fees(self) -> Dict[str, int]:
        """EIP-1559 fee parameters, both floored at the configured minimum."""
        latest = await self.w3.eth.get_block("latest")
        base_fee = int(latest.get("baseFeePerGas") or 0)
        network_priority = int(await self.w3.eth.max_priority_fee)

        priority_fee = max(network_priority, self.gas_floor_wei)
        max_fee = max(2 * base_fee + priority_fee, self.gas_floor_wei)
        return {"maxFeePerGas": max_fee, "maxPriorityFeePerGas": priority_fee}

    async def send_transfer(self, to_address: str, amount: int) -> str:
        """Sign and broadcast transfer(to, amount). Returns the tx hash hex."""
        recipient = Web3.to_checksum_address(to_address)

        async with self._nonce_lock:
            fees = await self.compute_gas_fees()
            nonce = await self.w3.eth.get_transaction_count(self.sender_address, "pending")
            tx = await self._contract.functions.transfer(recipient, amount).build_transaction({
                "from": self.sender_address,
                "chainId": self.chain_id,
                "nonce": nonce,
                "gas": self.gas_limit,
                **fees,
            })
            signed = self._account.sign_transaction(tx)
            tx_hash = Web3.to_hex(await self.w3.eth.send_raw_transaction(signed.raw_transaction))

        self.logger.info(
            "Transfer broadcast",
            tx_hash=tx_hash,
            to=recipient,
            amount=str(amount),
            nonce=nonce,
            max_fee_gwei=Web3.from_wei(fees["maxFeePerGas"], "gwei")
        )
        return tx_hash

    async def wait_for_confirmation(self, tx_hash: str) -> TransferReceipt:
        """
        Wait until the transaction is mined and has enough confirmations.

        Raises:
            TransactionRevertedError: receipt status is 0
            BlockchainError: no receipt within the timeout
        """
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout
            )
        except TimeExhausted as e:
            raise BlockchainError(
                f"Timed out waiting for receipt of {tx_hash}",
                {"tx_hash": tx_hash, "timeout": self.receipt_timeout}
            ) from e

        if receipt["status"] != 1:
            raise TransactionRevertedError(tx_hash)

        mined_block = int(receipt["blockNumber"])
        target_block = mined_block + self.confirmations - 1
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.receipt_timeout
        while await self.w3.eth.block_number < target_block:
            if loop.time() > deadline:
                raise BlockchainError(
                    f"Timed out waiting for {self.confirmations} confirmations on {tx_hash}",
                    {"tx_hash": tx_hash, "mined_block": mined_block}
                )
            await asyncio.sleep(1)

        self.logger.info("Transfer confirmed", tx_hash=tx_hash, block_number=mined_block)
        return TransferReceipt(
            tx_hash=tx_hash,
            block_number=mined_block,
            gas_used=int(receipt.get("gasUsed", 0)),
        )

    async def get_transaction_status(self, tx_hash: str) -> TxStatus:
        """Chain-side status of a previously broadcast transaction."""
        try:
            receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
            return TxStatus.SUCCESS if receipt["status"] == 1 else TxStatus.FAILED
        except TransactionNotFound:
            pass

        try:
            await self.w3.eth.get_transaction(tx_hash)
            return TxStatus.PENDING
        except TransactionNotFound:
            return TxStatus.NOT_FOUND

    async def describe_amount(self, amount: int) -> str:
        """Human readable token amount for logs."""
        try:
            decimals = await self.get_decimals()
        except Exception as e:
            self.logger.debug("decimals() lookup failed", error=str(e))
            return str(amount)
        whole, frac = divmod(amount, 10 ** decimals)
        frac_str = str(frac).rjust(decimals, "0").rstrip("0") if decimals else ""
        return f"{whole}.{frac_str}" if frac_str else str(whole)

    async def close(self) -> None:
        if self._w3 is not None:
            provider = self._w3.provider
            disconnect = getattr(provider, "disconnect", None)
            if disconnect is not None:
                await disconnect()
        self._w3 = None
        self._contract = None
