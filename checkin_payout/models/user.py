"""
User model - wallet identity anchor for check-ins and payouts.
"""

from datetime import datetime
from typing import Optional
from enum import Enum

from sqlalchemy import String, Integer, Boolean, DateTime, Index, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, generate_id


class UserRole(str, Enum):
    """Access roles."""
    USER = "USER"
    ADMIN = "ADMIN"


class UserStatus(str, Enum):
    """Account status; only ACTIVE users may check in."""
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    BLACKLISTED = "BLACKLISTED"


class User(BaseModel, TimestampMixin):
    """Wallet user identified by a did:pkh DID."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_id,
        comment="User identifier (uuid)"
    )

    did: Mapped[str] = mapped_column(
        String(128),
        unique=True,
        comment="Decentralized identifier did:pkh:eip155:{chain_id}:{address}"
    )

    wallet_address: Mapped[Optional[str]] = mapped_column(
        String(42),
        unique=True,
        comment="Lowercased EVM wallet address"
    )

    chain_id: Mapped[int] = mapped_column(
        Integer,
        comment="EVM chain id the wallet signed in with"
    )

    role: Mapped[UserRole] = mapped_column(
        SQLEnum(UserRole, name="userrole"),
        default=UserRole.USER,
        comment="Access role"
    )

    status: Mapped[UserStatus] = mapped_column(
        SQLEnum(UserStatus, name="userstatus"),
        default=UserStatus.ACTIVE,
        comment="Account status"
    )

    profile_completed: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="Whether onboarding is finished"
    )

    total_rewards: Mapped[str] = mapped_column(
        String(78),
        default="0",
        comment="Sum of successful payouts in token base units"
    )

    last_checkin_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        comment="Time of the last rewarded check-in"
    )

    last_login_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        comment="Time of the last signature login"
    )

    __table_args__ = (
        Index("idx_user_status", "status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def add_reward(self, amount: str) -> None:
        """Accumulate a payout amount using integer arithmetic."""
        self.total_rewards = str(int(self.total_rewards or "0") + int(amount))

    def __repr__(self) -> str:
        return f"<User(id={self.id}, did={self.did}, status={self.status})>"
