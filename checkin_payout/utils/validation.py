"""
EVM address validation and DID derivation utilities.
"""

import re
from typing import Optional, Tuple

from web3 import Web3

from checkin_payout.core.exceptions import ValidationError

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
DID_RE = re.compile(r"^did:pkh:eip155:(\d+):(0x[0-9a-f]{40})$")
AMOUNT_RE = re.compile(r"^\d+$")


class EvmValidator:
    """Validator for EVM wallet data."""

    @staticmethod
    def is_valid_address(address: Optional[str]) -> bool:
        """
        Validate an EVM address.

        Mixed-case addresses must carry a valid EIP-55 checksum.
        """
        if not address or not ADDRESS_RE.match(address):
            return False
        body = address[2:]
        if body.islower() or body.isupper():
            return True
        return Web3.is_checksum_address(address)

    @staticmethod
    def normalize_address(address: str) -> str:
        """Lowercase an address after validating it."""
        if not EvmValidator.is_valid_address(address):
            raise ValidationError(f"Invalid wallet address: {address}", {"address": address})
        return address.lower()

    @staticmethod
    def is_valid_amount(amount: str) -> bool:
        """Decimal-integer token amount in base units."""
        return bool(amount) and bool(AMOUNT_RE.match(amount))


def build_did(chain_id: int, address: str) -> str:
    """did:pkh:eip155:{chain_id}:{lowercased address}"""
    return f"did:pkh:eip155:{chain_id}:{EvmValidator.normalize_address(address)}"


def parse_did(did: str) -> Tuple[int, str]:
    """Split a did:pkh DID into (chain_id, address)."""
    match = DID_RE.match(did or "")
    if not match:
        raise ValidationError(f"Invalid DID: {did}", {"did": did})
    return int(match.group(1)), match.group(2)
