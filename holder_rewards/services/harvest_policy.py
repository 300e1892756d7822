"""
Tax harvest policy: roll over, single harvest or batched harvest.
"""

import asyncio
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional

import structlog

from holder_rewards.core.config import RewardSettings
from holder_rewards.core.exceptions import HarvestError, PartialBatchFailure, TransientUpstreamError
from .types import HarvestAction, HarvestBatch, HarvestDecision, HarvestOutcome, SwapReceipt


logger = structlog.get_logger(__name__)

TOKEN_MODE = "TOKEN"
USD_MODE = "USD"


class TaxHarvestPolicy:
    """
    Decides what to do with the outstanding tax and executes the swaps.

    One decision compares in a single unit: whole tokens in TOKEN mode,
    USD value in USD mode.
    """

    def __init__(
        self,
        mode: str = TOKEN_MODE,
        min_threshold_token: Decimal = Decimal("5"),
        min_threshold_usd: Decimal = Decimal("5"),
        max_harvest_token: Decimal = Decimal("12000000"),
        max_harvest_usd: Decimal = Decimal("2000"),
        batch_count: int = 4,
        batch_delay_token_mode: float = 10.0,
        batch_delay_usd_mode: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        if mode not in (TOKEN_MODE, USD_MODE):
            raise ValueError(f"Unknown harvest mode: {mode}")
        if batch_count < 1:
            raise ValueError("batch_count must be at least 1")
        self.mode = mode
        self.min_threshold_token = Decimal(min_threshold_token)
        self.min_threshold_usd = Decimal(min_threshold_usd)
        self.max_harvest_token = Decimal(max_harvest_token)
        self.max_harvest_usd = Decimal(max_harvest_usd)
        self.batch_count = batch_count
        self.batch_delay_token_mode = batch_delay_token_mode
        self.batch_delay_usd_mode = batch_delay_usd_mode
        self._sleep = sleep
        self.logger = logger.bind(service="tax_harvest_policy")

    @classmethod
    def from_settings(cls, settings: RewardSettings, **kwargs) -> "TaxHarvestPolicy":
        return cls(
            mode=settings.reward_value_mode,
            min_threshold_token=settings.min_tax_threshold_token,
            min_threshold_usd=settings.min_tax_threshold_usd,
            max_harvest_token=settings.max_harvest_token,
            max_harvest_usd=settings.max_harvest_usd,
            batch_count=settings.batch_count,
            batch_delay_token_mode=settings.batch_delay_token_mode,
            batch_delay_usd_mode=settings.batch_delay_usd_mode,
            **kwargs
        )

    @property
    def batch_delay(self) -> float:
        if self.mode == USD_MODE:
            return self.batch_delay_usd_mode
        return self.batch_delay_token_mode

    @property
    def requires_price(self) -> bool:
        return self.mode == USD_MODE

    def decide(
        self,
        outstanding: int,
        decimals: int,
        token_price_usd: Optional[Decimal] = None
    ) -> HarvestDecision:
        """
        Decide for ``outstanding`` raw tax units.

        Raises:
            TransientUpstreamError: USD mode without a token price
        """
        tokens = Decimal(outstanding) / (Decimal(10) ** decimals)

        if self.mode == USD_MODE:
            if token_price_usd is None:
                raise TransientUpstreamError(
                    "Token price unavailable for USD harvest threshold",
                    {"outstanding": outstanding}
                )
            value = tokens * Decimal(token_price_usd)
            minimum, cap = self.min_threshold_usd, self.max_harvest_usd
        else:
            value = tokens
            minimum, cap = self.min_threshold_token, self.max_harvest_token

        if outstanding <= 0 or value < minimum:
            return HarvestDecision(
                action=HarvestAction.ROLL_OVER,
                total_amount=outstanding,
                mode=self.mode,
                value=value,
                reason=f"{value} below minimum {minimum}"
            )

        if value <= cap:
            return HarvestDecision(
                action=HarvestAction.SINGLE,
                total_amount=outstanding,
                mode=self.mode,
                batches=[HarvestBatch(index=0, amount=outstanding)],
                value=value,
                reason=f"{value} within cap {cap}"
            )

        return HarvestDecision(
            action=HarvestAction.BATCHED,
            total_amount=outstanding,
            mode=self.mode,
            batches=split_batches(outstanding, self.batch_count, self.batch_delay),
            value=value,
            reason=f"{value} exceeds cap {cap}"
        )

    async def execute(
        self,
        decision: HarvestDecision,
        swap: Callable[[int], Awaitable[SwapReceipt]],
        on_converted: Optional[Callable[[int, SwapReceipt], Awaitable[None]]] = None,
        should_stop: Optional[Callable[[], bool]] = None
    ) -> HarvestOutcome:
        """
        Run the decision's batches one after another.

        ``on_converted`` is awaited after every successful swap so the
        conversion is recorded before the next batch starts. When
        ``should_stop`` turns true between batches the remaining batches are
        left outstanding.

        A failure after at least one batch converted is recorded on the
        outcome as ``PartialBatchFailure``; the completed batches stand and
        the rest stays outstanding.

        Raises:
            HarvestError: the first batch failed, nothing was converted
        """
        outcome = HarvestOutcome()

        for batch in decision.batches:
            if batch.amount <= 0:
                continue
            if outcome.batches_completed > 0:
                if self._stopping(should_stop, outcome, batch, len(decision.batches)):
                    break
                if batch.delay_before > 0:
                    self.logger.info(
                        "Waiting before next harvest batch",
                        batch=batch.index + 1,
                        delay_seconds=batch.delay_before
                    )
                    await self._sleep(batch.delay_before)
                    if self._stopping(should_stop, outcome, batch, len(decision.batches)):
                        break

            try:
                receipt = await swap(batch.amount)
            except Exception as e:
                if outcome.batches_completed == 0:
                    self.logger.error("Harvest failed on first batch", amount=batch.amount, error=str(e))
                    raise HarvestError(
                        f"Swap failed: {e}",
                        {"batch": batch.index + 1, "amount": batch.amount}
                    ) from e

                outcome.partial_failure = PartialBatchFailure(
                    converted_in=outcome.converted_in,
                    amount_out=outcome.amount_out,
                    failed_batch=batch.index + 1,
                    reason=str(e)
                )
                self.logger.warning(
                    "Batched harvest stopped early",
                    completed=outcome.batches_completed,
                    total_batches=len(decision.batches),
                    converted_in=outcome.converted_in,
                    error=str(e)
                )
                break

            outcome.converted_in += batch.amount
            outcome.amount_out += receipt.amount_out
            outcome.signatures.append(receipt.signature)
            outcome.batches_completed += 1

            self.logger.info(
                "Harvest batch converted",
                batch=batch.index + 1,
                total_batches=len(decision.batches),
                amount_in=batch.amount,
                amount_out=receipt.amount_out,
                signature=receipt.signature
            )

            if on_converted is not None:
                await on_converted(batch.amount, receipt)

        return outcome

    def _stopping(
        self,
        should_stop: Optional[Callable[[], bool]],
        outcome: HarvestOutcome,
        batch: HarvestBatch,
        total_batches: int
    ) -> bool:
        if should_stop is None or not should_stop():
            return False
        outcome.partial_failure = PartialBatchFailure(
            converted_in=outcome.converted_in,
            amount_out=outcome.amount_out,
            failed_batch=batch.index + 1,
            reason="shutdown requested"
        )
        self.logger.warning(
            "Batched harvest interrupted by shutdown",
            completed=outcome.batches_completed,
            total_batches=total_batches,
            converted_in=outcome.converted_in
        )
        return True


def split_batches(total: int, count: int, delay: float) -> List[HarvestBatch]:
    """``count`` batches of ``total // count``, remainder on the last one."""
    size = total // count
    batches = []
    for index in range(count):
        amount = size if index < count - 1 else total - size * (count - 1)
        batches.append(HarvestBatch(
            index=index,
            amount=amount,
            delay_before=delay if index > 0 else 0.0
        ))
    return batches
