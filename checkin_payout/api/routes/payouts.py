"""
Payout status and queue inspection endpoints.
"""

from fastapi import APIRouter, Depends, Path, Query

from checkin_payout.api.dependencies import (
    get_current_user,
    get_payout_queue,
    get_status_service,
    require_admin,
)
from checkin_payout.api.schemas.checkins import PayoutResponse, QueueStatusResponse
from checkin_payout.api.schemas.common import SuccessResponse, create_success_response
from checkin_payout.models import User
from checkin_payout.services.payout_queue import PayoutQueue
from checkin_payout.services.status_service import StatusService, poll_hint

router = APIRouter()


@router.get("/queue", response_model=SuccessResponse, summary="Payout queue status")
async def get_queue_status(
    limit: int = Query(10, ge=1, le=100, description="Failed jobs to include"),
    _admin: User = Depends(require_admin),
    queue: PayoutQueue = Depends(get_payout_queue),
):
    return create_success_response(data=QueueStatusResponse(
        pending=await queue.get_queue_length(),
        processing=await queue.get_processing_length(),
        failed_jobs=await queue.get_failed_jobs(limit),
    ))


@router.get("/{payout_id}", response_model=SuccessResponse, summary="Payout status")
async def get_payout(
    payout_id: str = Path(..., min_length=1, max_length=36),
    user: User = Depends(get_current_user),
    statuses: StatusService = Depends(get_status_service),
):
    payout = await statuses.get_payout(payout_id, user.id, as_admin=user.is_admin)
    return create_success_response(
        data={
            "payout": PayoutResponse.model_validate(payout),
            "next_poll_seconds": poll_hint(payout.status),
        }
    )
