"""
Main FastAPI application for the check-in payout backend.
Configures the API server with routes, middleware, and documentation.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

import structlog

from checkin_payout.core.config import settings
from checkin_payout.core.database import DatabaseManager, close_database, init_database
from checkin_payout.core.logging import setup_logging
from checkin_payout.cache.redis_client import close_redis_client, get_redis_client
from checkin_payout.services.x402_client import close_x402_client
from checkin_payout.api.middleware import add_middleware
from checkin_payout.api.schemas.common import APIResponse, HealthCheckResponse
from checkin_payout.api.routes import auth, checkins, payouts


logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting check-in payout API server")

    await init_database()
    await get_redis_client()

    yield

    logger.info("Shutting down check-in payout API server")

    try:
        await close_x402_client()
        await close_redis_client()
        await close_database()
    except Exception as e:
        logger.error("Error during shutdown", error=str(e))


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""

    setup_logging()

    app = FastAPI(
        title="Check-in Payout API",
        description="""
        Daily check-ins rewarded with ERC-20 token payouts.

        ## Authentication

        Sign in once with `POST /api/v1/auth/verify`, then send:
        ```
        Authorization: Bearer <your-wallet-address>
        ```

        ## Payouts

        Each successful check-in queues one payout. Poll
        `GET /api/v1/checkins/{id}` until the payout is terminal;
        the response carries `next_poll_seconds` while it is not.
        """,
        version=settings.app_version,
        lifespan=lifespan,
    )

    add_middleware(app)

    @app.get(
        "/health",
        response_model=HealthCheckResponse,
        tags=["System"],
        summary="Health Check",
    )
    async def health_check():
        """Health check endpoint."""
        database_ok = await DatabaseManager.health_check()
        redis = await get_redis_client()
        redis_health = await redis.health_check()
        services = {
            "database": "healthy" if database_ok else "unhealthy",
            "redis": redis_health.get("status"),
            "api": "healthy",
        }

        if not database_ok or redis_health.get("status") != "healthy":
            logger.error("Health check failed", services=services)
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "unhealthy", "services": services}
            )

        return HealthCheckResponse(status="healthy", version=settings.app_version, services=services)

    @app.get("/", response_model=APIResponse, tags=["System"], summary="API Information")
    async def root():
        return APIResponse(
            message=f"Check-in Payout API v{settings.app_version}",
        )

    app.include_router(
        auth.router,
        prefix=f"{settings.api_v1_prefix}/auth",
        tags=["Auth"]
    )

    app.include_router(
        checkins.router,
        prefix=settings.api_v1_prefix,
        tags=["Check-ins"]
    )

    app.include_router(
        payouts.router,
        prefix=f"{settings.api_v1_prefix}/payouts",
        tags=["Payouts"]
    )

    logger.info("FastAPI application created successfully")
    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "checkin_payout.api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.lower()
    )
