"""
Reward status routes.
Read-only views over the scheduler, cycle history and payout queue.
"""

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Query

import structlog

from holder_rewards.api.dependencies import get_registry, get_scheduler
from holder_rewards.api.schemas.common import (
    SuccessResponse,
    PaginatedResponse,
    create_success_response,
    create_paginated_response,
)
from holder_rewards.api.schemas.rewards import (
    CycleResultSchema,
    EpochStatisticsSchema,
    HolderStatusSchema,
    PendingPayoutSchema,
)
from holder_rewards.core.exceptions import NotFoundError
from holder_rewards.scheduler.reward_scheduler import RewardScheduler
from holder_rewards.services.eligibility import EligibleHolderRegistry
from holder_rewards.services.types import CycleResult, EligibilityStatus


logger = structlog.get_logger(__name__)

router = APIRouter()


def _cycle_schema(result: CycleResult) -> CycleResultSchema:
    data = asdict(result)
    data["state"] = result.state.value
    return CycleResultSchema(**data)


@router.get(
    "/status",
    response_model=SuccessResponse,
    summary="Get Reward Status",
    description="Current epoch and cycle, run state and payout queue totals"
)
async def get_status(scheduler: RewardScheduler = Depends(get_scheduler)):
    """Get scheduler status."""
    return create_success_response(data=await scheduler.get_status())


@router.get(
    "/cycles",
    response_model=SuccessResponse,
    summary="Get Cycle History",
    description="Recorded cycle results, newest first"
)
async def get_cycles(
    limit: int = Query(50, ge=1, le=500),
    epoch: Optional[str] = Query(None, description="Only cycles of this epoch"),
    scheduler: RewardScheduler = Depends(get_scheduler)
):
    results = await scheduler.get_cycle_history(limit=limit, epoch=epoch)
    return create_success_response(data=[_cycle_schema(r) for r in results])


@router.get(
    "/epochs",
    response_model=SuccessResponse,
    summary="Get Epoch Statistics",
    description="Per-epoch cycle counts and totals, newest first"
)
async def get_epochs(
    limit: int = Query(30, ge=1, le=365),
    scheduler: RewardScheduler = Depends(get_scheduler)
):
    stats = await scheduler.get_epoch_statistics(limit=limit)
    return create_success_response(data=[EpochStatisticsSchema(**s) for s in stats])


@router.get(
    "/epochs/{epoch}",
    response_model=SuccessResponse,
    summary="Get Epoch Details",
    description="Statistics and cycle results of one epoch"
)
async def get_epoch(epoch: str, scheduler: RewardScheduler = Depends(get_scheduler)):
    stats = await scheduler.store.epoch_statistics(limit=1, epoch=epoch)
    if not stats:
        raise NotFoundError(f"Epoch {epoch} not found", {"epoch": epoch})

    cycles = await scheduler.get_cycle_history(
        limit=scheduler.clock.cycles_per_epoch,
        epoch=epoch
    )
    return create_success_response(data={
        "statistics": EpochStatisticsSchema(**stats[0]),
        "cycles": [_cycle_schema(r) for r in cycles],
    })


@router.get(
    "/payouts/pending",
    response_model=SuccessResponse,
    summary="Get Pending Payouts",
    description="Payouts queued for retry"
)
async def get_pending_payouts(scheduler: RewardScheduler = Depends(get_scheduler)):
    pending = await scheduler.store.get_pending_payouts()
    return create_success_response(data={
        "count": len(pending),
        "total_lamports": sum(p.amount for p in pending),
        "payouts": [PendingPayoutSchema.model_validate(p) for p in pending],
    })


@router.get(
    "/holders",
    response_model=PaginatedResponse,
    summary="Get Holders",
    description="All holders of the current eligibility snapshot with payout bookkeeping"
)
async def get_holders(
    status: Optional[EligibilityStatus] = Query(None, description="Filter by eligibility status"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    scheduler: RewardScheduler = Depends(get_scheduler),
    registry: Optional[EligibleHolderRegistry] = Depends(get_registry)
):
    snapshot = registry.snapshot if registry is not None else None
    if snapshot is None:
        return create_paginated_response([], total=0, limit=limit, offset=offset)

    holders = [h for h in snapshot.holders if status is None or h.status == status]
    page = holders[offset:offset + limit]
    accounts = await scheduler.store.get_accounts([h.address for h in page])

    data = []
    for holder in page:
        account = accounts.get(holder.address)
        data.append(HolderStatusSchema(
            address=holder.address,
            balance=holder.balance,
            ui_balance=holder.holder.ui_balance,
            usd_value=holder.usd_value,
            status=holder.status.value,
            accumulated_reward=account.accumulated_reward if account else 0,
            total_paid=account.total_paid if account else 0,
            last_paid_at=account.last_paid_at if account else None,
        ))

    return create_paginated_response(data, total=len(holders), limit=limit, offset=offset)
