"""
Test pro-rata reward computation and the proceeds split.
"""

import random
from decimal import Decimal

from holder_rewards.services.reward_engine import compute_rewards, split_proceeds
from holder_rewards.services.types import EligibilityStatus, EligibleHolder, RewardShare
from tests.fakes import holder


def eligible(address, balance, status=EligibilityStatus.ELIGIBLE):
    return EligibleHolder(holder=holder(address, balance), usd_value=Decimal(balance), status=status)


def test_rewards_are_proportional_to_balance():
    """100 and 300 tokens sharing 40 lamports get 10 and 30."""
    rewards = compute_rewards([eligible("A", 100), eligible("B", 300)], 40)

    assert rewards == [RewardShare("A", 10), RewardShare("B", 30)]


def test_only_eligible_holders_take_part():
    holders = [
        eligible("A", 100),
        eligible("B", 100, EligibilityStatus.EXCLUDED),
        eligible("C", 100, EligibilityStatus.BLACKLISTED),
    ]

    rewards = compute_rewards(holders, 50)

    assert rewards == [RewardShare("A", 50)]


def test_floor_division_never_exceeds_distributable():
    holders = [eligible("A", 1), eligible("B", 1), eligible("C", 1)]

    rewards = compute_rewards(holders, 100)

    assert [r.amount for r in rewards] == [33, 33, 33]
    assert sum(r.amount for r in rewards) <= 100


def test_result_does_not_depend_on_input_order():
    holders = [eligible(f"H{i:03d}", 17 * i + 3) for i in range(50)]
    shuffled = list(holders)
    random.Random(7).shuffle(shuffled)

    assert compute_rewards(holders, 123_456_789) == compute_rewards(shuffled, 123_456_789)


def test_zero_rewards_are_dropped():
    rewards = compute_rewards([eligible("whale", 1_000_000), eligible("dust", 1)], 10)

    assert rewards == [RewardShare("whale", 9)]


def test_nothing_to_distribute():
    assert compute_rewards([eligible("A", 100)], 0) == []
    assert compute_rewards([], 1000) == []


def test_split_proceeds():
    assert split_proceeds(1000, 7500) == (750, 250)
    # Rounding remainder goes to the treasury
    assert split_proceeds(1001, 7500) == (750, 251)
    assert split_proceeds(1001, 10_000) == (1001, 0)
