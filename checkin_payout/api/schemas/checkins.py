"""
Request and response schemas for auth, check-in and payout endpoints.
"""

from datetime import date, datetime
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field

from checkin_payout.models import CheckInStatus, PaymentStatus, PayoutStatus, UserRole, UserStatus


class WalletVerifyRequest(BaseModel):
    """Signed login message."""
    address: str = Field(pattern=r"^0x[0-9a-fA-F]{40}$", description="EVM wallet address")
    chain_id: int = Field(gt=0, description="EVM chain id")
    message: str = Field(min_length=1, max_length=2000)
    signature: str = Field(pattern=r"^0x[0-9a-fA-F]{130}$", description="65-byte personal_sign signature")


class PaymentVerifyRequest(BaseModel):
    order_id: str = Field(min_length=1, max_length=128)


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    did: str
    wallet_address: Optional[str]
    chain_id: int
    role: UserRole
    status: UserStatus
    profile_completed: bool
    total_rewards: str
    last_checkin_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class AuthTokenResponse(BaseModel):
    """Login result: profile plus the bearer token for later requests."""
    user: UserResponse
    access_token: str
    token_type: str = "bearer"
    expires_in: int = Field(description="Token lifetime in seconds")


class PayoutResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    check_in_id: Optional[str]
    did: str
    amount: str
    status: PayoutStatus
    tx_hash: Optional[str] = None
    error_reason: Optional[str] = None
    retry_count: int
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class CheckInResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    did: str
    checkin_date: date
    status: CheckInStatus
    payout_id: Optional[str] = None
    payment_order_id: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    error_reason: Optional[str] = None
    created_at: Optional[datetime] = None


class CheckInDetailResponse(BaseModel):
    """Check-in with its payout and a polling hint."""
    check_in: CheckInResponse
    payout: Optional[PayoutResponse] = None
    next_poll_seconds: Optional[int] = None


class CheckInSummaryResponse(BaseModel):
    checked_in_today: bool
    total_checkins: int
    successful_checkins: int
    failed_checkins: int
    pending_checkins: int
    total_rewards: str
    last_checkin_at: Optional[datetime] = None
    streak: int
    rank: int


class QueueStatusResponse(BaseModel):
    pending: int
    processing: int
    failed_jobs: List[Dict[str, Any]]
