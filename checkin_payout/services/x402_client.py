"""
HTTP client for the merchant X402 payment-challenge service.
"""

from dataclasses import dataclass, asdict
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Dict, Any

import aiohttp
import structlog

from checkin_payout.core.config import settings, ChainConfig
from checkin_payout.core.exceptions import X402Error

logger = structlog.get_logger(__name__)

DEFAULT_CHALLENGE_TTL = timedelta(minutes=30)

# Verify reasons reported by the payment service
PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
NO_TRANSACTION = "NO_TRANSACTION"
INSUFFICIENT_AMOUNT = "INSUFFICIENT_AMOUNT"
RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"


@dataclass
class X402Challenge:
    """Payment requirement returned with HTTP 402."""
    order_id: str
    payment_address: str
    price_amount: str
    blockchain_name: str
    token_symbol: str
    expires_at: datetime

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "X402Challenge":
        order_id = payload.get("order_id")
        if not order_id:
            raise X402Error("Payment challenge is missing order_id", details={"payload": payload})

        return cls(
            order_id=order_id,
            payment_address=payload.get("payment_address", ""),
            price_amount=str(payload.get("price_amount", settings.checkin_price_amount)),
            blockchain_name=payload.get("blockchain_name")
            or ChainConfig.blockchain_name(settings.checkin_blockchain_type),
            token_symbol=payload.get("token_symbol", settings.checkin_token_symbol),
            expires_at=parse_expires_at(payload.get("expires_at")),
        )

    @property
    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["expires_at"] = self.expires_at.isoformat()
        return data


@dataclass
class DailyCheckInResult:
    """Outcome of the daily-checkin call: already done, or a challenge to pay."""
    already_checked_in: bool
    challenge: Optional[X402Challenge] = None


@dataclass
class VerifyResult:
    success: bool
    reason: Optional[str] = None


def parse_expires_at(value: Optional[str]) -> datetime:
    """Parse an RFC3339 expiry; unparseable values fall back to now + 30 minutes."""
    if value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
        except ValueError:
            logger.warning("Unparseable challenge expiry, using default", expires_at=value)
    return datetime.now(timezone.utc) + DEFAULT_CHALLENGE_TTL


class X402Client:
    """Async client for daily-checkin, verify and settle."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        merchant_id: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.base_url = (base_url or settings.x402_base_url).rstrip("/")
        self.api_token = api_token if api_token is not None else settings.x402_api_token
        self.merchant_id = merchant_id if merchant_id is not None else settings.x402_merchant_id
        self.timeout = aiohttp.ClientTimeout(total=timeout or settings.x402_timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self.logger = logger.bind(service="x402_client")

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-API-Token": self.api_token,
            "X-Merchant-ID": self.merchant_id,
        }

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=self._headers())
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _post(self, path: str, payload: Dict[str, Any]) -> tuple[int, Dict[str, Any]]:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.post(url, json=payload) as response:
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = {}
                return response.status, body or {}
        except aiohttp.ClientError as e:
            self.logger.error("X402 request failed", url=url, error=str(e))
            raise X402Error(f"X402 request failed: {e}", details={"url": url}) from e

    async def daily_checkin(self, merchant_user_id: str, day: date) -> DailyCheckInResult:
        """Ask the payment service whether today's check-in needs payment."""
        status, body = await self._post(
            "/api/business/daily-checkin",
            {
                "merchant_id": self.merchant_id,
                "merchant_user_id": merchant_user_id,
                "checkin_date": day.isoformat(),
            },
        )
        self.logger.info(
            "x402 daily-checkin response",
            status_code=status,
            merchant_user_id=merchant_user_id,
            checkin_date=day.isoformat()
        )

        if status == 200:
            return DailyCheckInResult(already_checked_in=True)

        if status == 402:
            data = body.get("data") or {}
            challenge = X402Challenge.from_payload(data.get("l402_challenge") or {})
            self.logger.info(
                "Payment challenge issued",
                order_id=challenge.order_id,
                price_amount=challenge.price_amount,
                token_symbol=challenge.token_symbol,
                expires_at=challenge.expires_at.isoformat()
            )
            return DailyCheckInResult(already_checked_in=False, challenge=challenge)

        raise X402Error(
            f"Unexpected daily-checkin status: {status}",
            status_code=status,
            details={"message": body.get("message")}
        )

    async def verify(self, order_id: str, merchant_user_id: str) -> VerifyResult:
        """Check whether the order's payment landed on-chain."""
        status, body = await self._post(
            "/v2/api/x402/verify",
            {
                "order_id": order_id,
                "merchant_id": self.merchant_id,
                "merchant_user_id": merchant_user_id,
            },
        )

        if status == 429:
            self.logger.warning("X402 verify rate limit exceeded", order_id=order_id)
            return VerifyResult(success=False, reason=RATE_LIMIT_EXCEEDED)

        if status >= 500:
            raise X402Error(f"X402 verify failed with status {status}", status_code=status)

        success = bool(body.get("success"))
        message = body.get("message") or None
        self.logger.info(
            "Payment verification result",
            order_id=order_id,
            success=success,
            message=message,
            status_code=status
        )
        return VerifyResult(success=success, reason=None if success else (message or NO_TRANSACTION))

    async def settle(self, order_id: str) -> None:
        """Settle a verified order. Idempotent on the payment service side."""
        status, body = await self._post("/v2/api/x402/settle", {"order_id": order_id})
        if status >= 400 or not body.get("success"):
            raise X402Error(
                f"Settlement failed: {body.get('message')}",
                status_code=status,
                details={"order_id": order_id}
            )
        self.logger.info("Payment settled", order_id=order_id)


# Global client instance
_x402_client: Optional[X402Client] = None


def get_x402_client() -> X402Client:
    """Get global X402 client instance."""
    global _x402_client
    if _x402_client is None:
        _x402_client = X402Client()
    return _x402_client


async def close_x402_client() -> None:
    global _x402_client
    if _x402_client is not None:
        await _x402_client.close()
        _x402_client = None
