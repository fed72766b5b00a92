"""
Custom middleware for the FastAPI application.
Provides rate limiting, logging, security headers and error mapping.
"""

import time
from datetime import datetime, timezone
from typing import Callable, Dict

from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.gzip import GZipMiddleware
from starlette.responses import JSONResponse

import structlog

from checkin_payout.core.config import settings
from checkin_payout.core.exceptions import CheckinPayoutException
from checkin_payout.auth.wallet_auth import WalletAuth


logger = structlog.get_logger(__name__)


# Domain error code -> HTTP status
ERROR_STATUS_CODES: Dict[str, int] = {
    "VALIDATION_ERROR": status.HTTP_400_BAD_REQUEST,
    "AUTHENTICATION_ERROR": status.HTTP_401_UNAUTHORIZED,
    "AUTHORIZATION_ERROR": status.HTTP_403_FORBIDDEN,
    "UNAUTHORIZED": status.HTTP_403_FORBIDDEN,
    "USER_INACTIVE": status.HTTP_403_FORBIDDEN,
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "USER_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "CHECKIN_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "PAYOUT_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "ORDER_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "ALREADY_CHECKED_IN": status.HTTP_409_CONFLICT,
    "ALREADY_COMPLETED": status.HTTP_409_CONFLICT,
    "RETRY_LIMIT_EXCEEDED": status.HTTP_409_CONFLICT,
    "RATE_LIMITED": status.HTTP_429_TOO_MANY_REQUESTS,
    "RATE_LIMIT_ERROR": status.HTTP_429_TOO_MANY_REQUESTS,
    "X402_ERROR": status.HTTP_502_BAD_GATEWAY,
    "EXTERNAL_SERVICE_ERROR": status.HTTP_502_BAD_GATEWAY,
}


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


async def domain_exception_handler(request: Request, exc: CheckinPayoutException) -> JSONResponse:
    """Map domain exceptions to JSON error responses."""
    status_code = ERROR_STATUS_CODES.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    log = logger.warning if status_code < 500 else logger.error
    log("Request rejected", path=request.url.path, error=exc.code, message=exc.message)
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": exc.code,
            "message": exc.message,
            "details": exc.details,
            "timestamp": _timestamp()
        }
    )


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for request/response logging."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()

        logger.info(
            "Request started",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )

        response = await call_next(request)
        process_time = time.perf_counter() - start_time
        response.headers["X-Process-Time"] = str(process_time)

        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            process_time=process_time,
        )
        return response


class RateLimitingMiddleware(BaseHTTPMiddleware):
    """Rate limiting middleware using in-memory storage."""

    def __init__(self, app: FastAPI, max_requests: int = 100, window_seconds: int = 60):
        super().__init__(app)
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.requests: Dict[str, list] = {}
        self.wallet_auth = WalletAuth()

    def _get_client_key(self, request: Request) -> str:
        auth_header = request.headers.get("authorization")
        if auth_header and auth_header.startswith("Bearer "):
            wallet = self.wallet_auth.extract_wallet_from_bearer_token(auth_header[7:])
            if wallet:
                return f"wallet:{wallet}"

        client_ip = request.client.host if request.client else "unknown"
        return f"ip:{client_ip}"

    def _is_rate_limited(self, client_key: str) -> bool:
        window_start = time.time() - self.window_seconds
        self.requests[client_key] = [
            req_time for req_time in self.requests.get(client_key, [])
            if req_time > window_start
        ]
        return len(self.requests[client_key]) >= self.max_requests

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        client_key = self._get_client_key(request)

        if self._is_rate_limited(client_key):
            logger.warning("Rate limit exceeded", client_key=client_key, path=request.url.path)
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "success": False,
                    "error": "RATE_LIMIT_EXCEEDED",
                    "message": f"Rate limit exceeded. Max {self.max_requests} requests per {self.window_seconds} seconds",
                    "timestamp": _timestamp()
                },
                headers={
                    "X-RateLimit-Limit": str(self.max_requests),
                    "Retry-After": str(self.window_seconds)
                }
            )

        self.requests[client_key].append(time.time())
        response = await call_next(request)

        remaining = self.max_requests - len(self.requests.get(client_key, []))
        response.headers["X-RateLimit-Limit"] = str(self.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to add security headers."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["X-API-Version"] = settings.app_version
        return response


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catches anything the exception handlers did not."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled error", path=request.url.path, error=str(e), exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": "INTERNAL_SERVER_ERROR",
                    "message": "An unexpected error occurred",
                    "timestamp": _timestamp()
                }
            )


def add_middleware(app: FastAPI) -> None:
    """Add all middleware and exception handlers to the FastAPI app."""
    app.add_exception_handler(CheckinPayoutException, domain_exception_handler)

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_middleware(GZipMiddleware, minimum_size=1000)

    # Order matters: last added runs first
    app.add_middleware(SecurityHeadersMiddleware)

    if settings.rate_limit_enabled:
        app.add_middleware(
            RateLimitingMiddleware,
            max_requests=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window
        )

    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(LoggingMiddleware)

    logger.info("Middleware configured successfully")
