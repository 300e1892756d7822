"""
One cycle of the reward pipeline: withdraw tax, decide the harvest, swap,
split the proceeds, compute rewards and distribute them.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import structlog

from holder_rewards.cache import UpstreamGuard
from holder_rewards.core.exceptions import HolderRewardsException
from holder_rewards.scheduler.epoch_clock import CyclePosition
from holder_rewards.store import StateStore
from .distribution import DistributionExecutor, PayoutThresholdResolver
from .eligibility import EligibleHolderRegistry
from .harvest_policy import TaxHarvestPolicy
from .interfaces import Swapper, TaxSource
from .price_oracle import PriceOracle
from .reward_engine import compute_rewards, split_proceeds
from .types import CycleResult, CycleState, HarvestAction, SwapReceipt


logger = structlog.get_logger(__name__)


class CycleProcessor:
    """Runs the pipeline for one ``CyclePosition`` and reports a ``CycleResult``."""

    def __init__(
        self,
        store: StateStore,
        tax_source: TaxSource,
        swapper: Swapper,
        guard: UpstreamGuard,
        policy: TaxHarvestPolicy,
        registry: EligibleHolderRegistry,
        oracle: PriceOracle,
        distribution: DistributionExecutor,
        threshold: PayoutThresholdResolver,
        holder_share_bps: int = 7500,
        treasury_address: Optional[str] = None,
        token_decimals: int = 9,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.store = store
        self.tax_source = tax_source
        self.swapper = swapper
        self.guard = guard
        self.policy = policy
        self.registry = registry
        self.oracle = oracle
        self.distribution = distribution
        self.threshold = threshold
        self.holder_share_bps = holder_share_bps if treasury_address else 10_000
        self.treasury_address = treasury_address
        self.token_decimals = token_decimals
        self._clock = clock
        # Set by the scheduler on shutdown, ends a batched harvest between batches
        self.stopping = False
        self.logger = logger.bind(service="cycle_processor")

    async def run(self, position: CyclePosition, started_at: datetime) -> CycleResult:
        """
        Execute one cycle. Failures are returned as a ``FAILED`` result
        carrying whatever had been done before the failure.
        """
        fields: Dict[str, Any] = {}
        log = self.logger.bind(epoch=position.epoch, cycle=position.cycle)

        try:
            state = await self._execute(position, fields, log)
        except Exception as e:
            if isinstance(e, HolderRewardsException):
                error = f"{e.code}: {e.message}"
            else:
                error = f"{type(e).__name__}: {e}"
            log.error("Cycle failed", error=error, **fields)
            return self._result(position, started_at, CycleState.FAILED, fields, error)

        return self._result(position, started_at, state, fields, fields.pop("error", None))

    async def _execute(self, position: CyclePosition, fields: Dict[str, Any], log) -> CycleState:
        withdrawn = await self.guard.call(self.tax_source.withdraw_withheld, operation="withdraw_withheld")
        fields["tax_withdrawn"] = withdrawn
        ledger = await self.store.record_withdrawal(withdrawn)

        price = None
        if self.policy.requires_price:
            price = await self.oracle.get_price()
            fields["token_price_usd"] = price

        decision = self.policy.decide(ledger.outstanding_tax, self.token_decimals, price)
        log.info(
            "Harvest decision",
            action=decision.action.value,
            outstanding=ledger.outstanding_tax,
            withdrawn=withdrawn,
            reason=decision.reason
        )

        if decision.action == HarvestAction.ROLL_OVER:
            # Queued payouts are still retried on a rolled-over cycle
            retries = await self.distribution.distribute(
                [], position.epoch, position.cycle, await self.threshold.resolve()
            )
            fields.update(
                payouts_sent=retries.sent,
                payouts_failed=retries.failed,
                distributed_amount=retries.distributed_amount
            )
            return CycleState.ROLLED_OVER

        # Everything that can fail without side effects happens before the swap
        snapshot = await self.registry.current()
        min_payout = await self.threshold.resolve()
        fields["eligible_holders"] = len(snapshot.eligible)
        fields["token_price_usd"] = snapshot.price_usd
        fields["tax_harvested"] = decision.total_amount
        fields["batched"] = decision.action == HarvestAction.BATCHED
        fields["batch_count"] = len(decision.batches)

        split = {"holders": 0, "treasury": 0}

        async def record_batch(amount_in: int, receipt: SwapReceipt) -> None:
            batch_holders, batch_treasury = split_proceeds(receipt.amount_out, self.holder_share_bps)
            split["holders"] += batch_holders
            split["treasury"] += batch_treasury
            await self.store.record_conversion(
                amount_in,
                receipt.amount_out,
                batch_holders,
                batch_treasury,
                self._clock()
            )

        outcome = await self.policy.execute(
            decision,
            lambda amount: self.guard.call(self.swapper.swap, amount, operation="swap"),
            on_converted=record_batch,
            should_stop=lambda: self.stopping
        )
        to_holders, to_treasury = split["holders"], split["treasury"]
        fields.update(
            tax_converted=outcome.converted_in,
            settlement_received=outcome.amount_out,
            holder_amount=to_holders,
            treasury_amount=to_treasury,
            swap_signatures=tuple(outcome.signatures)
        )
        if outcome.is_partial:
            fields["error"] = str(outcome.partial_failure)

        rewards = compute_rewards(snapshot.eligible, to_holders)
        if not rewards and to_holders > 0:
            log.warning("No eligible holders to reward", holder_amount=to_holders)

        result = await self.distribution.distribute(rewards, position.epoch, position.cycle, min_payout)
        fields.update(
            distributed_amount=result.distributed_amount,
            payouts_sent=result.sent,
            payouts_failed=result.failed,
            payouts_accumulated=result.accumulated
        )

        if to_treasury > 0 and self.treasury_address:
            treasury = await self.distribution.pay_direct(
                self.treasury_address, to_treasury, position.epoch, position.cycle
            )
            if treasury.signatures:
                fields["treasury_signature"] = treasury.signatures[0]

        log.info(
            "Cycle distributed",
            converted_in=outcome.converted_in,
            amount_out=outcome.amount_out,
            to_holders=to_holders,
            to_treasury=to_treasury,
            rewards=len(rewards),
            sent=result.sent,
            partial=outcome.is_partial
        )
        return CycleState.DISTRIBUTED

    def _result(
        self,
        position: CyclePosition,
        started_at: datetime,
        state: CycleState,
        fields: Dict[str, Any],
        error: Optional[str]
    ) -> CycleResult:
        fields.pop("error", None)
        return CycleResult(
            epoch=position.epoch,
            cycle=position.cycle,
            state=state,
            started_at=started_at,
            finished_at=self._clock(),
            error=error,
            **fields
        )
