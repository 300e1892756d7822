"""
Reward-related Pydantic schemas for API.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from .common import LamportsField


class CycleResultSchema(BaseModel):
    """One recorded cycle."""
    model_config = ConfigDict(from_attributes=True)

    epoch: str
    cycle: int
    state: str
    started_at: datetime
    finished_at: datetime
    tax_withdrawn: int = LamportsField
    tax_harvested: int = LamportsField
    tax_converted: int = LamportsField
    settlement_received: int = LamportsField
    holder_amount: int = LamportsField
    treasury_amount: int = LamportsField
    distributed_amount: int = LamportsField
    batched: bool
    batch_count: int
    payouts_sent: int
    payouts_failed: int
    payouts_accumulated: int
    eligible_holders: int
    swap_signatures: List[str]
    treasury_signature: Optional[str] = None
    token_price_usd: Optional[Decimal] = None
    error: Optional[str] = None


class EpochStatisticsSchema(BaseModel):
    """Cycle counts and totals for one epoch."""
    epoch: str
    cycles: int
    distributed: int
    rolled_over: int
    failed: int
    tax_harvested: int
    tax_converted: int
    distributed_amount: int
    treasury_amount: int
    payouts_sent: int
    last_cycle: int


class PendingPayoutSchema(BaseModel):
    """Queued payout waiting for a retry."""
    model_config = ConfigDict(from_attributes=True)

    address: str
    amount: int = LamportsField
    queued_at: datetime
    retry_count: int
    epoch: str
    cycle: int
    last_error: Optional[str] = None


class HolderStatusSchema(BaseModel):
    """Holder with eligibility and payout bookkeeping."""
    address: str
    balance: int
    ui_balance: Decimal
    usd_value: Decimal
    status: str
    accumulated_reward: int = 0
    total_paid: int = 0
    last_paid_at: Optional[datetime] = None
