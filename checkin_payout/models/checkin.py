"""
Check-in model - one user's claim to a daily reward.
"""

from datetime import date
from typing import Optional
from enum import Enum

from sqlalchemy import String, Date, Text, ForeignKey, Index, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, generate_id


class CheckInStatus(str, Enum):
    """Check-in lifecycle."""
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self != CheckInStatus.PENDING


class PaymentStatus(str, Enum):
    """Payment sub-state for gated check-ins."""
    PENDING_PAYMENT = "pending_payment"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_SUCCESS = "payment_success"


class CheckIn(BaseModel, TimestampMixin):
    """Daily check-in; at most one per user per calendar day."""

    __tablename__ = "check_ins"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_id,
        comment="Check-in identifier (uuid)"
    )

    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        comment="Owning user"
    )

    did: Mapped[str] = mapped_column(
        String(128),
        comment="DID of the owning user"
    )

    checkin_date: Mapped[date] = mapped_column(
        "date",
        Date,
        comment="UTC calendar day of the check-in"
    )

    status: Mapped[CheckInStatus] = mapped_column(
        SQLEnum(CheckInStatus, name="checkinstatus"),
        default=CheckInStatus.PENDING,
        comment="Check-in status"
    )

    payout_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        index=True,
        comment="Linked token payout"
    )

    payment_order_id: Mapped[Optional[str]] = mapped_column(
        String(128),
        unique=True,
        comment="X402 order that paid for this check-in"
    )

    payment_status: Mapped[Optional[PaymentStatus]] = mapped_column(
        SQLEnum(PaymentStatus, name="paymentstatus", values_callable=lambda e: [m.value for m in e]),
        comment="Payment outcome for gated check-ins"
    )

    error_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        comment="Failure reason"
    )

    __table_args__ = (
        Index("idx_checkin_user_date_unique", "user_id", "date", unique=True),
        Index("idx_checkin_status_updated", "status", "updated_at"),
    )

    def __repr__(self) -> str:
        return f"<CheckIn(id={self.id}, user_id={self.user_id}, date={self.checkin_date}, status={self.status})>"
