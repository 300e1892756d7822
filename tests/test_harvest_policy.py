"""
Test the tax harvest policy decisions and batched execution.
"""

from decimal import Decimal

import pytest

from holder_rewards.core.config import RewardSettings
from holder_rewards.core.exceptions import HarvestError, PartialBatchFailure, TransientUpstreamError
from holder_rewards.services.harvest_policy import TaxHarvestPolicy, split_batches
from holder_rewards.services.types import HarvestAction
from tests.fakes import FakeSwapper


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def token_policy(sleep=None, **kwargs) -> TaxHarvestPolicy:
    options = dict(
        mode="TOKEN",
        min_threshold_token=Decimal("5"),
        max_harvest_token=Decimal("12000"),
        batch_count=4,
        batch_delay_token_mode=10.0,
        batch_delay_usd_mode=30.0,
    )
    options.update(kwargs)
    return TaxHarvestPolicy(sleep=sleep or RecordingSleep(), **options)


def test_below_minimum_rolls_over():
    decision = token_policy().decide(4, decimals=0)

    assert decision.action == HarvestAction.ROLL_OVER
    assert decision.is_roll_over
    assert decision.batches == []


def test_nothing_outstanding_rolls_over():
    assert token_policy().decide(0, decimals=0).action == HarvestAction.ROLL_OVER


def test_within_cap_is_single_harvest():
    decision = token_policy().decide(12_000, decimals=0)

    assert decision.action == HarvestAction.SINGLE
    assert [b.amount for b in decision.batches] == [12_000]


def test_above_cap_is_batched():
    """50,000 tokens with a 12,000 cap become four batches of 12,500."""
    decision = token_policy().decide(50_000, decimals=0)

    assert decision.action == HarvestAction.BATCHED
    assert [b.amount for b in decision.batches] == [12_500] * 4
    assert [b.delay_before for b in decision.batches] == [0.0, 10.0, 10.0, 10.0]


def test_decimals_scale_the_comparison():
    decision = token_policy().decide(4_999_999, decimals=6)

    assert decision.action == HarvestAction.ROLL_OVER


def test_usd_mode_compares_value():
    policy = token_policy(
        mode="USD",
        min_threshold_usd=Decimal("5"),
        max_harvest_usd=Decimal("2000"),
    )

    assert policy.decide(400, decimals=0, token_price_usd=Decimal("0.01")).action == HarvestAction.ROLL_OVER
    assert policy.decide(1000, decimals=0, token_price_usd=Decimal("1")).action == HarvestAction.SINGLE

    batched = policy.decide(10_000, decimals=0, token_price_usd=Decimal("1"))
    assert batched.action == HarvestAction.BATCHED
    assert batched.batches[1].delay_before == 30.0


def test_usd_mode_without_price_fails():
    policy = token_policy(mode="USD")

    with pytest.raises(TransientUpstreamError):
        policy.decide(1000, decimals=0)


def test_split_batches_puts_remainder_last():
    batches = split_batches(10, 3, delay=1.0)

    assert [b.amount for b in batches] == [3, 3, 4]
    assert sum(b.amount for b in batches) == 10


def test_from_settings():
    settings = RewardSettings(_env_file=None, reward_value_mode="usd", batch_count=2)

    policy = TaxHarvestPolicy.from_settings(settings)

    assert policy.mode == "USD"
    assert policy.requires_price
    assert policy.batch_count == 2


@pytest.mark.asyncio
async def test_batched_execution_waits_between_batches():
    sleep = RecordingSleep()
    policy = token_policy(sleep=sleep)
    swapper = FakeSwapper(rate=2)

    outcome = await policy.execute(policy.decide(50_000, decimals=0), swapper.swap)

    assert swapper.swaps == [12_500] * 4
    assert sleep.delays == [10.0, 10.0, 10.0]
    assert outcome.converted_in == 50_000
    assert outcome.amount_out == 100_000
    assert outcome.batches_completed == 4
    assert outcome.signatures == ["swap-1", "swap-2", "swap-3", "swap-4"]
    assert not outcome.is_partial


@pytest.mark.asyncio
async def test_later_batch_failure_is_partial():
    policy = token_policy()
    swapper = FakeSwapper(rate=1, fail_on={3})

    outcome = await policy.execute(policy.decide(50_000, decimals=0), swapper.swap)

    assert outcome.is_partial
    assert isinstance(outcome.partial_failure, PartialBatchFailure)
    assert outcome.partial_failure.failed_batch == 3
    assert outcome.converted_in == 25_000
    assert outcome.batches_completed == 2


@pytest.mark.asyncio
async def test_first_batch_failure_raises():
    sleep = RecordingSleep()
    policy = token_policy(sleep=sleep)
    swapper = FakeSwapper(fail_on={1})

    with pytest.raises(HarvestError):
        await policy.execute(policy.decide(50_000, decimals=0), swapper.swap)

    assert sleep.delays == []


@pytest.mark.asyncio
async def test_each_batch_is_reported_before_the_next_starts():
    policy = token_policy()
    swapper = FakeSwapper(rate=2)
    reported = []

    async def on_converted(amount_in, receipt):
        reported.append((amount_in, receipt.amount_out, swapper.calls))

    await policy.execute(policy.decide(50_000, decimals=0), swapper.swap, on_converted=on_converted)

    assert reported == [(12_500, 25_000, 1), (12_500, 25_000, 2), (12_500, 25_000, 3), (12_500, 25_000, 4)]


@pytest.mark.asyncio
async def test_stop_between_batches_leaves_the_rest_outstanding():
    stop = {"requested": False}

    async def sleep(seconds):
        stop["requested"] = True

    policy = token_policy(sleep=sleep)
    swapper = FakeSwapper(rate=1)

    outcome = await policy.execute(
        policy.decide(50_000, decimals=0),
        swapper.swap,
        should_stop=lambda: stop["requested"]
    )

    assert swapper.swaps == [12_500]
    assert outcome.converted_in == 12_500
    assert outcome.is_partial
    assert outcome.partial_failure.failed_batch == 2
    assert "shutdown" in str(outcome.partial_failure)


@pytest.mark.asyncio
async def test_stop_does_not_skip_the_first_batch():
    policy = token_policy()
    swapper = FakeSwapper(rate=1)

    outcome = await policy.execute(policy.decide(100, decimals=0), swapper.swap, should_stop=lambda: True)

    assert swapper.swaps == [100]
    assert not outcome.is_partial
