"""
Types shared by the reward services.
"""

from datetime import datetime
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple


class EligibilityStatus(str, Enum):
    """Eligibility of a holder for the current snapshot."""
    ELIGIBLE = "eligible"
    EXCLUDED = "excluded"
    BLACKLISTED = "blacklisted"


class HarvestAction(str, Enum):
    """What the harvest policy decided for the outstanding tax."""
    ROLL_OVER = "roll_over"
    SINGLE = "single"
    BATCHED = "batched"


class CycleState(str, Enum):
    """Terminal state of one cycle."""
    DISTRIBUTED = "DISTRIBUTED"
    ROLLED_OVER = "ROLLED_OVER"
    FAILED = "FAILED"


class SchedulerPhase(str, Enum):
    """Phase of the reward scheduler."""
    STOPPED = "stopped"
    IDLE = "idle"
    RUNNING = "running"


@dataclass(frozen=True)
class Holder:
    """Token holder as reported by the holder source."""
    address: str
    balance: int
    decimals: int

    @property
    def ui_balance(self) -> Decimal:
        return Decimal(self.balance) / (Decimal(10) ** self.decimals)


@dataclass(frozen=True)
class EligibleHolder:
    """Holder with its USD value and eligibility status."""
    holder: Holder
    usd_value: Decimal
    status: EligibilityStatus

    @property
    def address(self) -> str:
        return self.holder.address

    @property
    def balance(self) -> int:
        return self.holder.balance

    @property
    def is_eligible(self) -> bool:
        return self.status == EligibilityStatus.ELIGIBLE


@dataclass(frozen=True)
class RewardShare:
    """Reward owed to one holder for one cycle, in lamports."""
    address: str
    amount: int


@dataclass(frozen=True)
class HarvestBatch:
    """One swap of tax tokens within a harvest."""
    index: int
    amount: int
    delay_before: float = 0.0


@dataclass
class HarvestDecision:
    """Outcome of the harvest policy for one cycle."""
    action: HarvestAction
    total_amount: int
    mode: str
    batches: List[HarvestBatch] = field(default_factory=list)
    value: Optional[Decimal] = None
    reason: str = ""

    @property
    def is_roll_over(self) -> bool:
        return self.action == HarvestAction.ROLL_OVER


@dataclass(frozen=True)
class SwapReceipt:
    """Result of one swap: lamports received and the transaction signature."""
    amount_out: int
    signature: str


@dataclass
class HarvestOutcome:
    """What actually happened while executing a harvest decision."""
    converted_in: int = 0
    amount_out: int = 0
    signatures: List[str] = field(default_factory=list)
    batches_completed: int = 0
    partial_failure: Optional[Exception] = None

    @property
    def is_partial(self) -> bool:
        return self.partial_failure is not None


@dataclass
class PendingPayout:
    """A payout waiting for its next settlement attempt."""
    address: str
    amount: int
    queued_at: datetime
    retry_count: int
    epoch: str
    cycle: int
    last_error: Optional[str] = None

    @property
    def action_key(self) -> str:
        return build_action_key(self.epoch, self.cycle, self.address)


@dataclass
class DistributionResult:
    """Counters for one distribution pass."""
    sent: int = 0
    failed: int = 0
    accumulated: int = 0
    permanently_failed: int = 0
    deferred: int = 0
    distributed_amount: int = 0
    accumulated_amount: int = 0
    signatures: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class CycleResult:
    """Immutable outcome of one scheduler cycle."""
    epoch: str
    cycle: int
    state: CycleState
    started_at: datetime
    finished_at: datetime
    tax_withdrawn: int = 0
    tax_harvested: int = 0
    tax_converted: int = 0
    settlement_received: int = 0
    holder_amount: int = 0
    treasury_amount: int = 0
    distributed_amount: int = 0
    batched: bool = False
    batch_count: int = 0
    payouts_sent: int = 0
    payouts_failed: int = 0
    payouts_accumulated: int = 0
    eligible_holders: int = 0
    swap_signatures: Tuple[str, ...] = ()
    treasury_signature: Optional[str] = None
    token_price_usd: Optional[Decimal] = None
    error: Optional[str] = None

    def summary(self) -> dict:
        return {
            "epoch": self.epoch,
            "cycle": self.cycle,
            "state": self.state.value,
            "finished_at": self.finished_at.isoformat(),
            "tax_harvested": self.tax_harvested,
            "distributed_amount": self.distributed_amount,
            "payouts_sent": self.payouts_sent,
            "payouts_failed": self.payouts_failed,
            "error": self.error,
        }


def build_action_key(epoch: str, cycle: int, address: str) -> str:
    """Idempotency key of a settlement action."""
    return f"{epoch}:{cycle}:{address}"
