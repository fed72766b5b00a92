"""
Wallet-based authentication.
"""

from .wallet_auth import WalletAuth, WalletVerificationService, login_with_signature

__all__ = [
    "WalletAuth",
    "WalletVerificationService",
    "login_with_signature",
]
