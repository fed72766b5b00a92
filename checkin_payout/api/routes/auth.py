"""
Wallet signature login.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from checkin_payout.api.dependencies import get_database, get_current_user, wallet_auth
from checkin_payout.api.schemas.checkins import AuthTokenResponse, UserResponse, WalletVerifyRequest
from checkin_payout.api.schemas.common import SuccessResponse, create_success_response
from checkin_payout.auth.wallet_auth import login_with_signature
from checkin_payout.models import User

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.post("/verify", response_model=SuccessResponse, summary="Verify wallet signature")
async def verify_signature(
    request: WalletVerifyRequest,
    db: AsyncSession = Depends(get_database)
):
    """
    Verify a personal_sign signature and log the wallet in.

    The user is created on the first successful verification. The returned
    access token authenticates later requests as
    `Authorization: Bearer <access_token>`.
    """
    user = await login_with_signature(
        db, request.address, request.chain_id, request.message, request.signature
    )
    return create_success_response(
        data=AuthTokenResponse(
            user=UserResponse.model_validate(user),
            access_token=wallet_auth.issue_token(user),
            expires_in=wallet_auth.expires_in,
        ),
        message="Wallet verified"
    )


@router.get("/me", response_model=SuccessResponse, summary="Current user")
async def get_me(user: User = Depends(get_current_user)):
    return create_success_response(data=UserResponse.model_validate(user))
