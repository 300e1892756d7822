"""
Distribution executor: turns reward shares into settlement transfers with
accumulation below the payout threshold, next-cycle retries and idempotent
audit bookkeeping.
"""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_CEILING
from typing import Callable, Dict, Iterable, Optional

import structlog

from holder_rewards.cache import UpstreamGuard
from holder_rewards.core.config import LAMPORTS_PER_SOL, RewardSettings
from holder_rewards.core.exceptions import (
    CircuitOpenError,
    InsufficientFundsError,
    TransientUpstreamError,
)
from holder_rewards.models import PayoutStatus
from holder_rewards.store import StateStore
from .interfaces import ActionLookup, Settlement
from .price_oracle import PriceOracle
from .types import DistributionResult, PendingPayout, RewardShare


logger = structlog.get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PayoutThresholdResolver:
    """
    Minimum payout in lamports for the active reward value mode.

    TOKEN mode converts ``min_payout_token`` through the token and SOL USD
    prices, USD mode converts ``min_payout_usd`` through the SOL price. The
    lamport floor always applies and is the fallback without prices.
    """

    def __init__(
        self,
        mode: str,
        min_payout_lamports: int,
        min_payout_token: Decimal = Decimal("0"),
        min_payout_usd: Decimal = Decimal("0"),
        oracle: Optional[PriceOracle] = None
    ):
        self.mode = mode
        self.min_payout_lamports = min_payout_lamports
        self.min_payout_token = Decimal(min_payout_token)
        self.min_payout_usd = Decimal(min_payout_usd)
        self.oracle = oracle
        self.logger = logger.bind(service="payout_threshold")

    @classmethod
    def from_settings(cls, settings: RewardSettings, oracle: Optional[PriceOracle] = None) -> "PayoutThresholdResolver":
        return cls(
            mode=settings.reward_value_mode,
            min_payout_lamports=settings.min_payout_lamports,
            min_payout_token=settings.min_payout_token,
            min_payout_usd=settings.min_payout_usd,
            oracle=oracle
        )

    async def resolve(self) -> int:
        if self.oracle is None:
            return self.min_payout_lamports

        try:
            sol_usd = await self.oracle.get_sol_price()
            if self.mode == "TOKEN":
                token_usd = await self.oracle.get_price()
                threshold_usd = self.min_payout_token * token_usd
            else:
                threshold_usd = self.min_payout_usd
        except TransientUpstreamError as e:
            self.logger.warning(
                "Prices unavailable, using lamport payout floor",
                floor=self.min_payout_lamports,
                error=str(e)
            )
            return self.min_payout_lamports

        lamports = (threshold_usd / sol_usd * LAMPORTS_PER_SOL).to_integral_value(rounding=ROUND_CEILING)
        return max(self.min_payout_lamports, int(lamports))


class DistributionExecutor:
    """
    Sends payouts and keeps the payout queue, accumulators and audit trail
    consistent through the state store.

    Every transfer carries the action key ``epoch:cycle:address`` of the
    cycle that created the payout; retries reuse it. The audit row is
    written as ``sending`` before the transfer is attempted.
    """

    def __init__(
        self,
        store: StateStore,
        settlement: Settlement,
        guard: UpstreamGuard,
        max_retries: int = 3,
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.settlement = settlement
        self.guard = guard
        self.max_retries = max_retries
        self._clock = clock
        self.logger = logger.bind(service="distribution_executor")

    @property
    def supports_lookup(self) -> bool:
        return isinstance(self.settlement, ActionLookup)

    async def distribute(
        self,
        rewards: Iterable[RewardShare],
        epoch: str,
        cycle: int,
        min_payout: int
    ) -> DistributionResult:
        """
        One distribution pass: this cycle's rewards, then retries of payouts
        queued by earlier cycles.

        A reward for a holder who still has a queued payout is added to the
        holder's accumulator and goes out with that retry.
        """
        result = DistributionResult()
        queued: Dict[str, PendingPayout] = {
            p.address: p for p in await self.store.get_pending_payouts()
        }
        accumulated = await self.store.get_accumulated_map()
        now = self._clock()

        for share in sorted(rewards, key=lambda s: s.address):
            if share.amount <= 0:
                continue

            prior = accumulated.get(share.address, 0)
            if share.address in queued or share.amount + prior < min_payout:
                accumulated[share.address] = await self.store.add_accumulated(share.address, share.amount)
                result.accumulated += 1
                result.accumulated_amount += share.amount
                continue

            payout = PendingPayout(
                address=share.address,
                amount=share.amount,
                queued_at=now,
                retry_count=0,
                epoch=epoch,
                cycle=cycle
            )
            await self._attempt(payout, share.amount + prior, result)

        for payout in queued.values():
            await self._retry(payout, accumulated.get(payout.address, 0), result)

        self.logger.info(
            "Distribution pass complete",
            epoch=epoch,
            cycle=cycle,
            sent=result.sent,
            failed=result.failed,
            deferred=result.deferred,
            accumulated=result.accumulated,
            permanently_failed=result.permanently_failed,
            distributed_amount=result.distributed_amount,
            min_payout=min_payout
        )
        return result

    async def pay_direct(self, address: str, amount: int, epoch: str, cycle: int) -> DistributionResult:
        """Pay ``amount`` to ``address`` now, without a payout threshold."""
        result = DistributionResult()
        if amount <= 0:
            return result

        queued = {p.address for p in await self.store.get_pending_payouts()}
        if address in queued:
            await self.store.add_accumulated(address, amount)
            result.accumulated += 1
            result.accumulated_amount += amount
            return result

        accumulated = await self.store.get_accumulated_map([address])
        prior = accumulated.get(address, 0)
        payout = PendingPayout(
            address=address,
            amount=amount,
            queued_at=self._clock(),
            retry_count=0,
            epoch=epoch,
            cycle=cycle
        )
        await self._attempt(payout, amount + prior, result)
        return result

    async def _retry(self, payout: PendingPayout, accumulated: int, result: DistributionResult) -> None:
        if self.supports_lookup:
            # A previous attempt may have landed without being recorded
            record = await self.store.get_payout_record(payout.action_key)
            try:
                action_id = await self.guard.call(
                    self.settlement.lookup_action,
                    payout.action_key,
                    operation="lookup_action"
                )
            except Exception as e:
                action_id = None
                self.logger.warning("Action lookup failed before retry", address=payout.address, error=str(e))

            if action_id:
                sent = record.amount if record else payout.amount + accumulated
                carried = max(0, sent - payout.amount)
                await self.store.complete_attempt(
                    payout,
                    sent,
                    action_id,
                    self._clock(),
                    remaining_accumulated=max(0, accumulated - carried)
                )
                self.logger.info(
                    "Queued payout already settled, not resending",
                    address=payout.address,
                    action_key=payout.action_key,
                    action_id=action_id
                )
                result.sent += 1
                result.distributed_amount += sent
                result.signatures.append(action_id)
                return

        await self._attempt(payout, payout.amount + accumulated, result)

    async def _attempt(self, payout: PendingPayout, amount: int, result: DistributionResult) -> None:
        """Send one payout. Transfer failures are isolated to this holder."""
        await self.store.begin_attempt(payout, amount)

        try:
            action_id = await self.guard.call(
                self.settlement.transfer,
                payout.address,
                amount,
                payout.action_key,
                operation="transfer"
            )
        except (InsufficientFundsError, CircuitOpenError) as e:
            await self.store.fail_attempt(payout, str(e), self.max_retries, count_retry=False)
            result.deferred += 1
            self.logger.warning(
                "Payout deferred to next cycle",
                address=payout.address,
                amount=amount,
                reason=e.code
            )
            return
        except Exception as e:
            status = await self.store.fail_attempt(payout, str(e), self.max_retries)
            result.failed += 1
            if status == PayoutStatus.PERMANENTLY_FAILED:
                result.permanently_failed += 1
                self.logger.error(
                    "Payout permanently failed",
                    address=payout.address,
                    amount=amount,
                    action_key=payout.action_key,
                    retries=payout.retry_count + 1,
                    error=str(e)
                )
            else:
                self.logger.warning(
                    "Payout failed, queued for retry",
                    address=payout.address,
                    amount=amount,
                    retry_count=payout.retry_count + 1,
                    max_retries=self.max_retries,
                    error=str(e)
                )
            return

        await self.store.complete_attempt(payout, amount, action_id, self._clock())
        result.sent += 1
        result.distributed_amount += amount
        result.signatures.append(action_id)
        self.logger.info(
            "Payout sent",
            address=payout.address,
            amount=amount,
            action_key=payout.action_key,
            signature=action_id
        )

    async def reconcile(self) -> Dict[str, int]:
        """
        Resolve audit rows left in ``sending`` by a crash.

        With a settlement lookup the row becomes ``paid`` or ``not_sent``;
        without one (or when the lookup fails) it becomes
        ``needs_reconciliation`` and the payout stays queued.
        """
        counts = {"paid": 0, "not_sent": 0, "needs_reconciliation": 0}
        in_flight = await self.store.get_payout_records(status=PayoutStatus.SENDING, limit=10_000)

        for record in in_flight:
            status = PayoutStatus.NEEDS_RECONCILIATION
            action_id = None

            if self.supports_lookup:
                try:
                    action_id = await self.guard.call(
                        self.settlement.lookup_action,
                        record.action_key,
                        operation="lookup_action"
                    )
                    status = PayoutStatus.PAID if action_id else PayoutStatus.NOT_SENT
                except Exception as e:
                    self.logger.warning(
                        "Action lookup failed during reconciliation",
                        action_key=record.action_key,
                        error=str(e)
                    )

            await self.store.resolve_in_flight(record.action_key, status, action_id, self._clock())
            counts[status.value] += 1

        if in_flight:
            self.logger.warning("Reconciled in-flight payouts", **counts)
        return counts
