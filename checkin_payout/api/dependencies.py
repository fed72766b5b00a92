"""
API dependencies for FastAPI endpoints.
Provides reusable dependency functions for authentication and service wiring.
"""

from typing import Optional

from fastapi import Depends, HTTPException, Query, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from checkin_payout.auth.wallet_auth import WalletAuth
from checkin_payout.cache.redis_client import RedisClient, get_redis_client
from checkin_payout.core.database import get_db_session
from checkin_payout.models import User
from checkin_payout.services.checkin_service import CheckInService
from checkin_payout.services.payment_gateway import PaymentGateway
from checkin_payout.services.payout_queue import PayoutQueue
from checkin_payout.services.rate_limiter import CheckInRateLimiter
from checkin_payout.services.status_service import StatusService
from checkin_payout.services.x402_client import X402Client, get_x402_client
from checkin_payout.api.schemas.common import PaginationParams


logger = structlog.get_logger(__name__)

# Security scheme for wallet authentication
wallet_auth_scheme = HTTPBearer(auto_error=False)
wallet_auth = WalletAuth()


# Database session dependency
get_database = get_db_session


async def get_redis() -> RedisClient:
    return await get_redis_client()


def get_x402() -> X402Client:
    return get_x402_client()


def get_payout_queue(redis: RedisClient = Depends(get_redis)) -> PayoutQueue:
    return PayoutQueue(redis)


def get_checkin_service(
    db: AsyncSession = Depends(get_database),
    redis: RedisClient = Depends(get_redis),
    queue: PayoutQueue = Depends(get_payout_queue),
) -> CheckInService:
    return CheckInService(db, queue, CheckInRateLimiter(redis))


def get_payment_gateway(
    redis: RedisClient = Depends(get_redis),
    x402: X402Client = Depends(get_x402),
    checkins: CheckInService = Depends(get_checkin_service),
) -> PaymentGateway:
    return PaymentGateway(redis, x402, checkins)


def get_status_service(db: AsyncSession = Depends(get_database)) -> StatusService:
    return StatusService(db)


async def get_pagination_params(
    page: int = Query(1, ge=1, description="Page number"),
    size: int = Query(20, ge=1, le=100, description="Items per page")
) -> PaginationParams:
    """Get pagination parameters."""
    return PaginationParams(page=page, size=size)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(wallet_auth_scheme),
    db: AsyncSession = Depends(get_database)
) -> User:
    """Resolve the user behind `Authorization: Bearer <access token>`."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "AUTHENTICATION_REQUIRED", "message": "Wallet authentication required"},
            headers={"WWW-Authenticate": "Bearer"}
        )

    claims = wallet_auth.validate_token(credentials.credentials)
    user = await db.get(User, claims["sub"])
    if user is None or user.wallet_address != claims.get("wallet"):
        logger.info("Token subject not registered", user_id=claims["sub"], wallet=claims.get("wallet"))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "USER_NOT_REGISTERED", "message": "Sign in with your wallet first"},
            headers={"WWW-Authenticate": "Bearer"}
        )
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "ADMIN_REQUIRED", "message": "Administrator role required"}
        )
    return user
