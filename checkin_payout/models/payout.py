"""
Token payout model - on-chain transfer owed to a user.
"""

from datetime import datetime
from typing import Optional
from enum import Enum

from sqlalchemy import String, Integer, Text, DateTime, ForeignKey, Index, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, generate_id


class PayoutStatus(str, Enum):
    """Payout lifecycle. FAILED may re-enter QUEUED via an explicit retry."""
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    FAILED_PERMANENT = "FAILED_PERMANENT"

    @property
    def is_terminal(self) -> bool:
        return self in (PayoutStatus.SUCCESS, PayoutStatus.FAILED, PayoutStatus.FAILED_PERMANENT)


class TokenPayout(BaseModel, TimestampMixin):
    """ERC20 reward transfer tied to a check-in."""

    __tablename__ = "token_payouts"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_id,
        comment="Payout identifier (uuid)"
    )

    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        comment="Recipient user"
    )

    did: Mapped[str] = mapped_column(
        String(128),
        comment="DID of the recipient"
    )

    check_in_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("check_ins.id", ondelete="SET NULL"),
        index=True,
        comment="Check-in this payout rewards"
    )

    amount: Mapped[str] = mapped_column(
        String(78),
        comment="Amount in token base units as a decimal-integer string"
    )

    status: Mapped[PayoutStatus] = mapped_column(
        SQLEnum(PayoutStatus, name="payoutstatus"),
        default=PayoutStatus.QUEUED,
        comment="Payout status"
    )

    tx_hash: Mapped[Optional[str]] = mapped_column(
        String(66),
        comment="Broadcast transaction hash"
    )

    error_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        comment="Last failure reason"
    )

    retry_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Number of explicit retries"
    )

    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        comment="When the payout reached a terminal state"
    )

    __table_args__ = (
        Index("idx_payout_status_created", "status", "created_at"),
        Index("idx_payout_user", "user_id"),
    )

    @property
    def amount_int(self) -> int:
        return int(self.amount)

    def __repr__(self) -> str:
        return f"<TokenPayout(id={self.id}, status={self.status}, amount={self.amount})>"
