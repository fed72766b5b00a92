"""
Check-in endpoints: create (optionally payment gated), verify payment,
status polling and payout retry.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Path, status
from fastapi.responses import JSONResponse

import structlog

from checkin_payout.api.dependencies import (
    get_checkin_service,
    get_current_user,
    get_pagination_params,
    get_payment_gateway,
    get_status_service,
)
from checkin_payout.api.schemas.checkins import (
    CheckInDetailResponse,
    CheckInResponse,
    CheckInSummaryResponse,
    PaymentVerifyRequest,
    PayoutResponse,
)
from checkin_payout.api.schemas.common import (
    PaginatedResponse,
    PaginationParams,
    SuccessResponse,
    create_paginated_response,
    create_success_response,
)
from checkin_payout.core.config import settings
from checkin_payout.models import User
from checkin_payout.services.checkin_service import CheckInService
from checkin_payout.services.payment_gateway import PaymentGateway
from checkin_payout.services.status_service import StatusService, poll_hint

logger = structlog.get_logger(__name__)
router = APIRouter()


def _detail(check_in, payout) -> CheckInDetailResponse:
    return CheckInDetailResponse(
        check_in=CheckInResponse.model_validate(check_in),
        payout=PayoutResponse.model_validate(payout) if payout is not None else None,
        next_poll_seconds=poll_hint(payout.status if payout is not None else None),
    )


def _json(status_code: int, body: dict) -> JSONResponse:
    body.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    return JSONResponse(status_code=status_code, content=body)


@router.post("/checkin", summary="Daily check-in")
async def create_check_in(
    user: User = Depends(get_current_user),
    checkins: CheckInService = Depends(get_checkin_service),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Check in for today.

    - 200 with the new check-in when no payment is required
    - 200 `{alreadyCheckedIn: true}` when today is already done
    - 402 with an `l402_challenge` when payment is required
    """
    if settings.checkin_payment_required:
        outcome = await gateway.create_challenge(user)
        if outcome.status_code == 402:
            return _json(status.HTTP_402_PAYMENT_REQUIRED, {
                "success": False,
                "message": "Payment required",
                "l402_challenge": outcome.challenge.to_dict(),
                "polling": {
                    "interval_seconds": settings.payment_poll_interval,
                    "max_attempts": settings.payment_poll_max_attempts,
                },
            })
        return _json(status.HTTP_200_OK, {
            "success": True,
            "alreadyCheckedIn": True,
            "data": CheckInResponse.model_validate(outcome.check_in).model_dump(mode="json")
            if outcome.check_in is not None else None,
        })

    check_in = await checkins.create_daily_check_in(user.id, user.did)
    return _json(status.HTTP_200_OK, {
        "success": True,
        "alreadyCheckedIn": False,
        "data": CheckInResponse.model_validate(check_in).model_dump(mode="json"),
    })


@router.post("/checkin/verify", summary="Verify check-in payment")
async def verify_check_in_payment(
    request: PaymentVerifyRequest,
    user: User = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Verify the payment for an order returned by `POST /checkin`.

    Clients poll this endpoint up to `max_attempts` times at
    `interval_seconds`; `PENDING_CONFIRMATION` and `NO_TRANSACTION`
    mean poll again.
    """
    outcome = await gateway.verify(request.order_id, user)
    body = {
        "success": outcome.success,
        "alreadyCheckedIn": outcome.already_checked_in,
        "data": CheckInResponse.model_validate(outcome.check_in).model_dump(mode="json")
        if outcome.check_in is not None else None,
    }
    if outcome.reason:
        body["reason"] = outcome.reason
    return _json(status.HTTP_200_OK, body)


@router.get("/checkins/today", response_model=SuccessResponse, summary="Today's check-in")
async def get_today_check_in(
    user: User = Depends(get_current_user),
    statuses: StatusService = Depends(get_status_service),
):
    check_in, payout = await statuses.get_today(user.id)
    if check_in is None:
        return create_success_response(data=None, message="Not checked in today")
    return create_success_response(data=_detail(check_in, payout))


@router.get("/checkins/my", response_model=PaginatedResponse, summary="My check-ins")
async def list_my_check_ins(
    user: User = Depends(get_current_user),
    pagination: PaginationParams = Depends(get_pagination_params),
    statuses: StatusService = Depends(get_status_service),
):
    items, total = await statuses.list_check_ins(user.id, pagination.page, pagination.size)
    return create_paginated_response(
        data=[CheckInResponse.model_validate(item) for item in items],
        total=total,
        page=pagination.page,
        size=pagination.size,
    )


@router.get("/checkins/summary", response_model=SuccessResponse, summary="Check-in summary")
async def get_check_in_summary(
    user: User = Depends(get_current_user),
    statuses: StatusService = Depends(get_status_service),
):
    summary = await statuses.get_summary(user.id)
    return create_success_response(data=CheckInSummaryResponse(**summary))


@router.get("/checkins/{check_in_id}", response_model=SuccessResponse, summary="Check-in status")
async def get_check_in(
    check_in_id: str = Path(..., min_length=1, max_length=36),
    user: User = Depends(get_current_user),
    statuses: StatusService = Depends(get_status_service),
):
    check_in, payout = await statuses.get_check_in(check_in_id, user.id, as_admin=user.is_admin)
    return create_success_response(data=_detail(check_in, payout))


@router.post("/checkins/{check_in_id}/retry", response_model=SuccessResponse, summary="Retry payout")
async def retry_check_in_payout(
    check_in_id: str = Path(..., min_length=1, max_length=36),
    user: User = Depends(get_current_user),
    checkins: CheckInService = Depends(get_checkin_service),
):
    """Re-queue the failed payout of a check-in (at most 3 retries)."""
    payout = await checkins.retry_check_in(check_in_id, user.id, as_admin=user.is_admin)
    logger.info("Payout retry requested", check_in_id=check_in_id, payout_id=payout.id, user_id=user.id)
    return create_success_response(
        data=PayoutResponse.model_validate(payout),
        message="Payout re-queued"
    )
