"""
API dependencies for FastAPI endpoints.
"""

from typing import Optional

from fastapi import HTTPException, Request, status

from holder_rewards.scheduler.reward_scheduler import RewardScheduler
from holder_rewards.services.eligibility import EligibleHolderRegistry


def get_scheduler(request: Request) -> RewardScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "SCHEDULER_UNAVAILABLE", "message": "Reward scheduler not configured"}
        )
    return scheduler


def get_registry(request: Request) -> Optional[EligibleHolderRegistry]:
    return getattr(request.app.state, "registry", None)
