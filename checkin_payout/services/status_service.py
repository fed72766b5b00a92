"""
Read side for check-in and payout status polling.
"""

from datetime import date, timedelta
from typing import Optional, List, Dict, Any, Tuple

from sqlalchemy import select, func, cast, Numeric
from sqlalchemy.ext.asyncio import AsyncSession

from checkin_payout.core.config import settings
from checkin_payout.core.exceptions import (
    CheckInNotFoundError,
    PayoutNotFoundError,
    UnauthorizedError,
    UserNotFoundError,
)
from checkin_payout.models import CheckIn, CheckInStatus, PayoutStatus, TokenPayout, User
from checkin_payout.services.checkin_service import utc_today


def poll_hint(status: Optional[PayoutStatus]) -> Optional[int]:
    """Seconds until the client should poll again, None once terminal."""
    if status is None or status.is_terminal:
        return None
    return settings.status_poll_interval


def current_streak(days: List[date], today: date) -> int:
    """Consecutive check-in days ending today or yesterday."""
    seen = set(days)
    cursor = today if today in seen else today - timedelta(days=1)
    streak = 0
    while cursor in seen:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


class StatusService:
    """Owner-scoped lookups of check-ins and payouts."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_check_in(self, check_in_id: str, user_id: str, *, as_admin: bool = False) -> Tuple[CheckIn, Optional[TokenPayout]]:
        check_in = await self.session.get(CheckIn, check_in_id)
        if check_in is None:
            raise CheckInNotFoundError(check_in_id)
        if not as_admin and check_in.user_id != user_id:
            raise UnauthorizedError("Check-in belongs to another user", {"check_in_id": check_in_id})
        payout = await self.session.get(TokenPayout, check_in.payout_id) if check_in.payout_id else None
        return check_in, payout

    async def get_today(self, user_id: str) -> Tuple[Optional[CheckIn], Optional[TokenPayout]]:
        result = await self.session.execute(
            select(CheckIn).where(CheckIn.user_id == user_id, CheckIn.checkin_date == utc_today())
        )
        check_in = result.scalar_one_or_none()
        if check_in is None:
            return None, None
        payout = await self.session.get(TokenPayout, check_in.payout_id) if check_in.payout_id else None
        return check_in, payout

    async def list_check_ins(self, user_id: str, page: int = 1, size: int = 20) -> Tuple[List[CheckIn], int]:
        total = await self.session.scalar(
            select(func.count()).select_from(CheckIn).where(CheckIn.user_id == user_id)
        )
        result = await self.session.execute(
            select(CheckIn)
            .where(CheckIn.user_id == user_id)
            .order_by(CheckIn.checkin_date.desc())
            .offset((page - 1) * size)
            .limit(size)
        )
        return list(result.scalars().all()), total or 0

    async def get_payout(self, payout_id: str, user_id: str, *, as_admin: bool = False) -> TokenPayout:
        payout = await self.session.get(TokenPayout, payout_id)
        if payout is None:
            raise PayoutNotFoundError(payout_id)
        if not as_admin and payout.user_id != user_id:
            raise UnauthorizedError("Payout belongs to another user", {"payout_id": payout_id})
        return payout

    async def get_summary(self, user_id: str) -> Dict[str, Any]:
        user = await self.session.get(User, user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        rows = await self.session.execute(
            select(CheckIn.status, func.count()).where(CheckIn.user_id == user_id).group_by(CheckIn.status)
        )
        counts = {status: count for status, count in rows.all()}

        success_days = await self.session.scalars(
            select(CheckIn.checkin_date)
            .where(CheckIn.user_id == user_id, CheckIn.status == CheckInStatus.SUCCESS)
        )
        today = utc_today()
        day_list = list(success_days.all())

        return {
            "checked_in_today": await self._has_check_in(user_id, today),
            "total_checkins": sum(counts.values()),
            "successful_checkins": counts.get(CheckInStatus.SUCCESS, 0),
            "failed_checkins": counts.get(CheckInStatus.FAILED, 0),
            "pending_checkins": counts.get(CheckInStatus.PENDING, 0),
            "total_rewards": user.total_rewards,
            "last_checkin_at": user.last_checkin_at,
            "streak": current_streak(day_list, today),
            "rank": await self._rank(user),
        }

    async def _has_check_in(self, user_id: str, day: date) -> bool:
        count = await self.session.scalar(
            select(func.count()).select_from(CheckIn)
            .where(CheckIn.user_id == user_id, CheckIn.checkin_date == day)
        )
        return bool(count)

    async def _rank(self, user: User) -> int:
        """1-based position by total rewards."""
        ahead = await self.session.scalar(
            select(func.count()).select_from(User).where(
                cast(User.total_rewards, Numeric) > cast(user.total_rewards or "0", Numeric)
            )
        )
        return (ahead or 0) + 1
