"""
Database models for the check-in payout backend.

The relational store is the source of truth for every check-in
and payout state transition.
"""

from .base import Base, BaseModel, TimestampMixin
from .user import User, UserRole, UserStatus
from .checkin import CheckIn, CheckInStatus, PaymentStatus
from .payout import TokenPayout, PayoutStatus
from .activity import ActivityLog, ActivityAction, ActivityStatus

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "User",
    "UserRole",
    "UserStatus",
    "CheckIn",
    "CheckInStatus",
    "PaymentStatus",
    "TokenPayout",
    "PayoutStatus",
    "ActivityLog",
    "ActivityAction",
    "ActivityStatus",
]
