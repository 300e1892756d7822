"""
Pro-rata reward computation.
"""

from typing import Iterable, List

from .types import EligibleHolder, RewardShare


def compute_rewards(holders: Iterable[EligibleHolder], distributable: int) -> List[RewardShare]:
    """
    Split ``distributable`` lamports across holders by balance share.

    ``reward_i = distributable * balance_i // total``. Only eligible
    holders take part, holders are processed in address order and zero
    rewards are dropped, so equal inputs always give the same list and the
    sum never exceeds ``distributable``.
    """
    if distributable <= 0:
        return []

    eligible = sorted(
        (h for h in holders if h.is_eligible and h.balance > 0),
        key=lambda h: h.address
    )
    total = sum(h.balance for h in eligible)
    if total == 0:
        return []

    rewards = []
    for holder in eligible:
        amount = distributable * holder.balance // total
        if amount > 0:
            rewards.append(RewardShare(address=holder.address, amount=amount))
    return rewards


def split_proceeds(amount: int, holder_share_bps: int) -> tuple:
    """Split swap proceeds into (holders, treasury)."""
    to_holders = amount * holder_share_bps // 10_000
    return to_holders, amount - to_holders
