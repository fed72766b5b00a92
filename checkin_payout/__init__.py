"""
Check-in Payout Backend

Backend service for daily wallet check-ins that provides:
- Daily check-in orchestration with optional X402 payment challenges
- Durable Redis payout queue with crash recovery
- Payout worker settling ERC20 rewards on-chain
- REST API for check-in and payout status
"""

__version__ = "0.1.0"
__author__ = "Check-in Payout Team"
