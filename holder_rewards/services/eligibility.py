"""
Eligibility filter and the periodically refreshed eligible-holder snapshot.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, FrozenSet, Iterable, List, Optional, Sequence

import structlog

from holder_rewards.core.config import RewardSettings
from .holder_directory import HolderDirectory
from .price_oracle import PriceOracle
from .types import EligibilityStatus, EligibleHolder, Holder


logger = structlog.get_logger(__name__)


class EligibilityFilter:
    """
    Classifies holders as blacklisted, eligible or excluded.

    Blacklisted addresses never qualify. Everyone else qualifies when the
    USD value of the balance reaches ``min_holding_usd`` at the given price.
    """

    def __init__(self, min_holding_usd: Decimal, blacklist: Iterable[str] = ()):
        self.min_holding_usd = Decimal(min_holding_usd)
        self.blacklist: FrozenSet[str] = frozenset(a for a in blacklist if a)

    @classmethod
    def from_settings(
        cls,
        settings: RewardSettings,
        extra_blacklist: Iterable[str] = ()
    ) -> "EligibilityFilter":
        """Build from settings. The reward and treasury wallets and pools are always denied."""
        blacklist = set(settings.blacklist)
        blacklist.update(settings.pool_addresses)
        if settings.treasury_wallet_address:
            blacklist.add(settings.treasury_wallet_address)
        blacklist.update(extra_blacklist)
        return cls(settings.min_holding_usd, blacklist)

    def classify(self, holder: Holder, price: Decimal) -> EligibleHolder:
        usd_value = holder.ui_balance * price
        if holder.address in self.blacklist:
            status = EligibilityStatus.BLACKLISTED
        elif usd_value >= self.min_holding_usd:
            status = EligibilityStatus.ELIGIBLE
        else:
            status = EligibilityStatus.EXCLUDED
        return EligibleHolder(holder=holder, usd_value=usd_value, status=status)

    def evaluate(self, holders: Iterable[Holder], price: Decimal) -> List[EligibleHolder]:
        """Classify every holder against one price, ordered by address."""
        price = Decimal(price)
        return [
            self.classify(holder, price)
            for holder in sorted(holders, key=lambda h: h.address)
        ]


@dataclass(frozen=True)
class EligibilitySnapshot:
    """Classified holders and the single price they were classified at."""
    holders: Sequence[EligibleHolder]
    price_usd: Decimal
    taken_at: datetime

    @property
    def eligible(self) -> List[EligibleHolder]:
        return [h for h in self.holders if h.is_eligible]

    def count(self, status: EligibilityStatus) -> int:
        return sum(1 for h in self.holders if h.status == status)


class EligibleHolderRegistry:
    """
    Keeps the current eligibility snapshot and refreshes it on an interval.

    Holders are read through the directory cache, so a stale list is used
    while it revalidates. A failed refresh keeps serving the previous
    snapshot; only when there has never been one does the failure propagate.
    """

    def __init__(
        self,
        directory: HolderDirectory,
        oracle: PriceOracle,
        eligibility: EligibilityFilter,
        refresh_interval: float = 3600.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.directory = directory
        self.oracle = oracle
        self.eligibility = eligibility
        self.refresh_interval = refresh_interval
        self._clock = clock
        self._snapshot: Optional[EligibilitySnapshot] = None
        self._refreshed_at: Optional[float] = None
        self.failed_refreshes = 0
        self.logger = logger.bind(service="eligible_holder_registry")

    @property
    def snapshot(self) -> Optional[EligibilitySnapshot]:
        return self._snapshot

    def is_due(self) -> bool:
        if self._refreshed_at is None:
            return True
        return self._clock() - self._refreshed_at >= self.refresh_interval

    async def current(self) -> EligibilitySnapshot:
        """Current snapshot, refreshing first when the interval has passed."""
        if self.is_due():
            return await self.refresh()
        return self._snapshot

    async def refresh(self) -> EligibilitySnapshot:
        try:
            holders = await self.directory.get_holders()
            price = await self.oracle.get_price()
        except Exception as e:
            self.failed_refreshes += 1
            if self._snapshot is None:
                self.logger.error("Eligible holder refresh failed with no snapshot", error=str(e))
                raise
            self.logger.warning(
                "Eligible holder refresh failed, keeping previous snapshot",
                error=str(e),
                snapshot_taken_at=self._snapshot.taken_at.isoformat()
            )
            return self._snapshot

        snapshot = EligibilitySnapshot(
            holders=tuple(self.eligibility.evaluate(holders, price)),
            price_usd=price,
            taken_at=datetime.now(timezone.utc)
        )
        self._snapshot = snapshot
        self._refreshed_at = self._clock()

        self.logger.info(
            "Eligible holders refreshed",
            total=len(snapshot.holders),
            eligible=snapshot.count(EligibilityStatus.ELIGIBLE),
            excluded=snapshot.count(EligibilityStatus.EXCLUDED),
            blacklisted=snapshot.count(EligibilityStatus.BLACKLISTED),
            price_usd=str(price)
        )
        return snapshot
