"""
EVM wallet authentication module.

Login verifies an EIP-191 personal_sign signature and creates the user on
first success. The login response carries a signed access token that
later requests present as a bearer token.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

import jwt
import structlog
from eth_account import Account
from eth_account.messages import encode_defunct
from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from checkin_payout.core.config import settings
from checkin_payout.core.database import atomic
from checkin_payout.core.exceptions import AuthenticationError, ValidationError
from checkin_payout.models import ActivityAction, ActivityLog, ActivityStatus, User, UserRole
from checkin_payout.models.base import utcnow
from checkin_payout.utils.validation import EvmValidator, build_did

logger = structlog.get_logger(__name__)


class WalletVerificationService:
    """Verifies personal_sign signatures."""

    @staticmethod
    def recover_address(message: str, signature: str) -> str:
        """Recover the lowercased signer address of an EIP-191 message."""
        try:
            signer = Account.recover_message(encode_defunct(text=message), signature=signature)
        except Exception as e:
            raise AuthenticationError("Invalid signature", {"error": str(e)}) from e
        return signer.lower()

    @staticmethod
    def verify_wallet_signature(
        wallet_address: str,
        signature: str,
        message: str,
        max_age_minutes: int = 10
    ) -> Dict[str, Any]:
        """
        Verify a wallet signature for authentication.

        JSON messages carrying `timestamp` (unix seconds) or `wallet` are
        additionally checked for freshness and address match.

        Returns:
            Dict with verification result and details
        """
        expected = wallet_address.lower()
        try:
            message_data = json.loads(message)
        except json.JSONDecodeError:
            message_data = None

        if isinstance(message_data, dict):
            if "timestamp" in message_data:
                signed_at = datetime.fromtimestamp(int(message_data["timestamp"]), tz=timezone.utc)
                if datetime.now(timezone.utc) - signed_at > timedelta(minutes=max_age_minutes):
                    return {
                        "valid": False,
                        "error": "Message timestamp is too old",
                        "details": f"Message older than {max_age_minutes} minutes"
                    }
            if "wallet" in message_data and str(message_data["wallet"]).lower() != expected:
                return {
                    "valid": False,
                    "error": "Wallet address mismatch",
                    "details": "Message wallet doesn't match provided address"
                }

        try:
            recovered = WalletVerificationService.recover_address(message, signature)
        except AuthenticationError as e:
            return {"valid": False, "error": e.message, "details": e.details.get("error")}

        if recovered != expected:
            return {
                "valid": False,
                "error": "Signature does not match wallet",
                "details": f"Recovered {recovered}"
            }
        return {"valid": True, "wallet": expected}


class WalletAuth:
    """Issues and validates the signed access tokens handed out at login."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        algorithm: Optional[str] = None,
        expire_hours: Optional[int] = None,
    ):
        self.secret_key = secret_key or settings.jwt_secret_key
        self.algorithm = algorithm or settings.jwt_algorithm
        self.expire_hours = expire_hours if expire_hours is not None else settings.jwt_expire_hours

    @property
    def expires_in(self) -> int:
        return self.expire_hours * 3600

    def issue_token(self, user: User, now: Optional[datetime] = None) -> str:
        """Sign an access token for a logged-in user."""
        now = now or datetime.now(timezone.utc)
        claims = {
            "sub": user.id,
            "wallet": user.wallet_address,
            "did": user.did,
            "role": user.role.value,
            "iat": now,
            "nbf": now,
            "exp": now + timedelta(hours=self.expire_hours),
        }
        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm)

    def validate_token(self, token: str) -> Dict[str, Any]:
        """
        Decode and verify an access token.

        Raises:
            HTTPException: 401 when the token is expired, forged or malformed
        """
        try:
            claims = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={"require": ["sub", "exp"]},
            )
        except jwt.ExpiredSignatureError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"error": "TOKEN_EXPIRED", "message": "Access token expired, sign in again"},
                headers={"WWW-Authenticate": "Bearer"}
            )
        except jwt.InvalidTokenError as e:
            logger.info("Rejected access token", error=str(e))
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"error": "INVALID_TOKEN", "message": "Invalid access token"},
                headers={"WWW-Authenticate": "Bearer"}
            )
        return claims

    def extract_wallet_from_bearer_token(self, token: str) -> Optional[str]:
        try:
            return self.validate_token(token).get("wallet")
        except HTTPException:
            return None


async def login_with_signature(
    session: AsyncSession,
    address: str,
    chain_id: int,
    message: str,
    signature: str,
) -> User:
    """
    Verify a signed login message and return the (possibly new) user.

    Raises:
        ValidationError: malformed address
        AuthenticationError: signature does not match
    """
    wallet = EvmValidator.normalize_address(address)
    result = WalletVerificationService.verify_wallet_signature(wallet, signature, message)
    if not result["valid"]:
        logger.warning("Wallet signature rejected", wallet=wallet, error=result["error"])
        raise AuthenticationError(result["error"], {"wallet": wallet, "details": result.get("details")})

    existing = await session.execute(select(User).where(User.wallet_address == wallet))
    user = existing.scalar_one_or_none()
    created = user is None

    async with atomic(session):
        if created:
            user = User(
                did=build_did(chain_id, wallet),
                wallet_address=wallet,
                chain_id=chain_id,
                role=UserRole.USER,
            )
            session.add(user)
            await session.flush()
        elif user.chain_id != chain_id:
            raise ValidationError(
                "Wallet is registered on a different chain",
                {"wallet": wallet, "chain_id": user.chain_id}
            )
        user.last_login_at = utcnow()
        session.add(ActivityLog(
            user_id=user.id,
            did=user.did,
            action=ActivityAction.AUTHORIZATION,
            status=ActivityStatus.SUCCESS,
            meta={"wallet": wallet, "chainId": chain_id, "newUser": created},
        ))

    logger.info("Wallet authenticated", wallet=wallet, user_id=user.id, new_user=created)
    return user
