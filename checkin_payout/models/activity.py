"""
Activity log model - append-only audit trail.
"""

from typing import Optional, Dict, Any
from enum import Enum

from sqlalchemy import String, JSON, Index, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, generate_id


class ActivityAction(str, Enum):
    CHECK_IN = "CHECK_IN"
    PAYOUT = "PAYOUT"
    AUTHORIZATION = "AUTHORIZATION"
    RETRY = "RETRY"


class ActivityStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    INFO = "info"


class ActivityLog(BaseModel, TimestampMixin):
    """Audit entry. Written by the core, never read back by it."""

    __tablename__ = "activity_logs"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_id
    )

    user_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        comment="Acting or affected user"
    )

    did: Mapped[Optional[str]] = mapped_column(String(128))

    action: Mapped[ActivityAction] = mapped_column(
        SQLEnum(ActivityAction, name="activityaction"),
        comment="Audited action"
    )

    status: Mapped[ActivityStatus] = mapped_column(
        SQLEnum(ActivityStatus, name="activitystatus", values_callable=lambda e: [m.value for m in e]),
        comment="Outcome"
    )

    # "metadata" is reserved on declarative classes
    meta: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata",
        JSON,
        comment="Free-form event payload"
    )

    __table_args__ = (
        Index("idx_activity_user_action", "user_id", "action"),
    )

    def __repr__(self) -> str:
        return f"<ActivityLog(action={self.action}, status={self.status})>"
