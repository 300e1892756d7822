"""
FastAPI status application for the holder rewards engine.
Exposes scheduler status, cycle history and payout bookkeeping.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

import structlog

from holder_rewards.core.config import settings
from holder_rewards.core.database import get_database
from holder_rewards.core.exceptions import HolderRewardsException, NotFoundError
from holder_rewards.api.middleware import add_middleware
from holder_rewards.api.routes import rewards
from holder_rewards.api.schemas.common import (
    APIResponse,
    HealthCheckResponse,
    create_error_response,
)
from holder_rewards.scheduler.reward_scheduler import RewardScheduler
from holder_rewards.services.eligibility import EligibleHolderRegistry


logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting holder rewards API")

    scheduler: Optional[RewardScheduler] = app.state.scheduler
    manage = app.state.manage_scheduler and scheduler is not None

    if manage:
        try:
            await scheduler.start()
            logger.info("Reward scheduler started by API")
        except Exception as e:
            logger.error("Failed to start reward scheduler", error=str(e))

    yield

    logger.info("Shutting down holder rewards API")

    if manage:
        try:
            await scheduler.stop()
        except Exception as e:
            logger.error("Error during shutdown", error=str(e))


def create_app(
    scheduler: Optional[RewardScheduler] = None,
    registry: Optional[EligibleHolderRegistry] = None,
    manage_scheduler: bool = False
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        scheduler: Scheduler backing the status routes
        registry: Eligible holder registry backing the holder listing
        manage_scheduler: Start and stop the scheduler with the app lifespan
    """
    app = FastAPI(
        title=settings.app_name,
        description="Status API for the holder rewards engine: cycles, epochs and payouts.",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.scheduler = scheduler
    app.state.registry = registry if registry is not None else getattr(scheduler, "registry", None)
    app.state.manage_scheduler = manage_scheduler

    add_middleware(app)

    @app.exception_handler(HolderRewardsException)
    async def rewards_exception_handler(request: Request, exc: HolderRewardsException):
        if isinstance(exc, NotFoundError):
            status_code = status.HTTP_404_NOT_FOUND
        else:
            status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
            logger.error("Request failed", url=str(request.url), code=exc.code, error=exc.message)

        error = create_error_response(exc.message, error_code=exc.code, details=exc.details)
        return JSONResponse(status_code=status_code, content=error.model_dump(mode="json"))

    @app.get(
        "/health",
        response_model=HealthCheckResponse,
        tags=["System"],
        summary="Health Check",
        description="Check database and scheduler health"
    )
    async def health_check():
        """Health check endpoint."""
        current = app.state.scheduler
        try:
            if current is not None:
                report = await current.health_check()
                database_ok = report["database"]
                scheduler_ok = report["healthy"]
            else:
                database_ok = await get_database().health_check()
                scheduler_ok = False
        except Exception as e:
            logger.error("Health check failed", error=str(e))
            database_ok = scheduler_ok = False

        services = {
            "database": "healthy" if database_ok else "unhealthy",
            "scheduler": "healthy" if scheduler_ok else ("unhealthy" if current else "not_configured"),
            "api": "healthy",
        }

        if not database_ok or (current is not None and not scheduler_ok):
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "unhealthy", "services": services}
            )

        return HealthCheckResponse(
            status="healthy",
            version=settings.app_version,
            services=services
        )

    @app.get(
        "/",
        response_model=APIResponse,
        tags=["System"],
        summary="API Information"
    )
    async def root():
        """Root endpoint with API information."""
        return APIResponse(message=f"{settings.app_name} v{settings.app_version}")

    app.include_router(
        rewards.router,
        prefix=f"{settings.api_v1_prefix}/rewards",
        tags=["Rewards"]
    )

    logger.debug("FastAPI application created")
    return app
