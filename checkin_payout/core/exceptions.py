"""
Custom exception classes for the application.
Provides structured error handling across the API and the payout worker.
"""

from typing import Any, Optional, Dict


class CheckinPayoutException(Exception):
    """Base exception class for the check-in payout backend."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(CheckinPayoutException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class DatabaseError(CheckinPayoutException):
    """Raised when there's a database error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DATABASE_ERROR", details)


class ValidationError(CheckinPayoutException):
    """Raised when data validation fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class NotFoundError(CheckinPayoutException):
    """Raised when a requested resource is not found."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: str = "NOT_FOUND"
    ):
        super().__init__(message, code, details)


class AuthenticationError(CheckinPayoutException):
    """Raised when authentication fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "AUTHENTICATION_ERROR", details)


class AuthorizationError(CheckinPayoutException):
    """Raised when authorization fails."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: str = "AUTHORIZATION_ERROR"
    ):
        super().__init__(message, code, details)


class RateLimitError(CheckinPayoutException):
    """Raised when rate limit is exceeded."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: str = "RATE_LIMIT_ERROR"
    ):
        super().__init__(message, code, details)


class ExternalServiceError(CheckinPayoutException):
    """Raised when an external service error occurs."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: str = "EXTERNAL_SERVICE_ERROR"
    ):
        super().__init__(message, code, details)


class BlockchainError(CheckinPayoutException):
    """Raised when a chain interaction fails."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: str = "BLOCKCHAIN_ERROR"
    ):
        super().__init__(message, code, details)


class ConflictError(CheckinPayoutException):
    """Raised when a request conflicts with the current resource state."""

    def __init__(self, message: str, code: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code, details)


# User exceptions
class UserNotFoundError(NotFoundError):
    """Raised when a user is not found."""

    def __init__(self, user_id: str):
        super().__init__(
            f"User not found: {user_id}",
            {"user_id": user_id},
            code="USER_NOT_FOUND"
        )


class UserInactiveError(AuthorizationError):
    """Raised when a suspended or blacklisted user tries to check in."""

    def __init__(self, user_id: str, status: str):
        super().__init__(
            f"User {user_id} is not active (status: {status})",
            {"user_id": user_id, "status": status},
            code="USER_INACTIVE"
        )


class UnauthorizedError(AuthorizationError):
    """Raised when a user acts on a resource owned by someone else."""

    def __init__(self, message: str = "Unauthorized", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="UNAUTHORIZED")


class WalletMissingError(ValidationError):
    """Raised when a payout recipient has no wallet address."""

    def __init__(self, user_id: str):
        super().__init__(
            f"User {user_id} has no wallet address",
            {"user_id": user_id}
        )
        self.code = "WALLET_MISSING"


# Check-in exceptions
class AlreadyCheckedInError(ConflictError):
    """Raised when the user already has a check-in for the day."""

    def __init__(self, user_id: str, day: str):
        super().__init__(
            f"Already checked in today ({day})",
            "ALREADY_CHECKED_IN",
            {"user_id": user_id, "date": day}
        )


class CheckInRateLimitedError(RateLimitError):
    """Raised when the daily check-in allowance for a DID is consumed."""

    def __init__(self, did: str, day: str):
        super().__init__(
            "Daily check-in allowance already consumed",
            {"did": did, "date": day},
            code="RATE_LIMITED"
        )


class CheckInNotFoundError(NotFoundError):
    """Raised when a check-in is not found."""

    def __init__(self, check_in_id: str):
        super().__init__(
            f"Check-in not found: {check_in_id}",
            {"check_in_id": check_in_id},
            code="CHECKIN_NOT_FOUND"
        )


# Payout exceptions
class PayoutNotFoundError(NotFoundError):
    """Raised when a payout is not found."""

    def __init__(self, payout_id: str):
        super().__init__(
            f"Payout not found: {payout_id}",
            {"payout_id": payout_id},
            code="PAYOUT_NOT_FOUND"
        )


class AlreadyCompletedError(ConflictError):
    """Raised when retrying a payout that already succeeded."""

    def __init__(self, payout_id: str):
        super().__init__(
            "Payout already completed",
            "ALREADY_COMPLETED",
            {"payout_id": payout_id}
        )


class RetryLimitExceededError(ConflictError):
    """Raised when a payout has used all of its retries."""

    def __init__(self, payout_id: str, retry_count: int, max_retries: int):
        super().__init__(
            f"Maximum retry attempts reached ({retry_count}/{max_retries})",
            "RETRY_LIMIT_EXCEEDED",
            {"payout_id": payout_id, "retry_count": retry_count, "max_retries": max_retries}
        )


class InvalidJobError(ValidationError):
    """Raised when a queue payload cannot be parsed into a payout job."""

    def __init__(self, raw: str, reason: str):
        super().__init__(
            f"Invalid payout job: {reason}",
            {"raw": raw[:200], "reason": reason}
        )
        self.code = "INVALID_JOB"
        self.raw = raw


# Chain exceptions
class InsufficientFundsError(BlockchainError):
    """Raised when the custodial wallet cannot cover a payout."""

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient token balance. Required: {required}, Available: {available}",
            {"required": str(required), "available": str(available)},
            code="INSUFFICIENT_FUNDS"
        )


class RpcConnectionError(BlockchainError):
    """Raised when the chain RPC stays unreachable after all attempts."""

    def __init__(self, rpc_url: str, attempts: int, error: str):
        super().__init__(
            f"Failed to connect to blockchain RPC after {attempts} attempts: {error}",
            {"rpc_url": rpc_url, "attempts": attempts},
            code="RPC_CONNECTION_ERROR"
        )


class TransactionRevertedError(BlockchainError):
    """Raised when a payout transaction is mined with a failed status."""

    def __init__(self, tx_hash: str):
        super().__init__(
            f"Transaction reverted: {tx_hash}",
            {"tx_hash": tx_hash},
            code="TRANSACTION_REVERTED"
        )
        self.tx_hash = tx_hash


# Payment gateway exceptions
class X402Error(ExternalServiceError):
    """Raised when the X402 payment service returns an unexpected response."""

    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details, code="X402_ERROR")
        self.status_code = status_code


class PaymentOrderNotFoundError(NotFoundError):
    """Raised when verify is called for an unknown or expired order."""

    def __init__(self, order_id: str):
        super().__init__(
            f"Payment order not found or expired: {order_id}",
            {"order_id": order_id},
            code="ORDER_NOT_FOUND"
        )
