"""
Holder directory: the current set of token holders, refreshed wholesale
from the holder source through the shared cache.
"""

from typing import Dict, List, Optional, Tuple

import structlog

from holder_rewards.cache import SWRCache, UpstreamGuard
from .interfaces import HolderSource
from .types import Holder


logger = structlog.get_logger(__name__)

HOLDERS_KEY = "holders"


class HolderDirectory:
    """Cached view over a ``HolderSource``."""

    def __init__(
        self,
        source: HolderSource,
        guard: UpstreamGuard,
        ttl: float = 300.0,
        hard_ttl: float = 1800.0,
        cache: Optional[SWRCache] = None
    ):
        self.source = source
        self.guard = guard
        self.cache = cache or SWRCache("holders", ttl=ttl, hard_ttl=hard_ttl)
        self.logger = logger.bind(service="holder_directory")

    async def get_holders(self) -> Tuple[Holder, ...]:
        """Holders from cache, fetching (or revalidating) as needed."""
        return await self.cache.get_or_fetch(HOLDERS_KEY, self._fetch)

    async def _fetch(self) -> Tuple[Holder, ...]:
        raw = await self.guard.call(self.source.fetch_holders, operation="fetch_holders")
        holders = normalize_holders(raw)
        self.logger.info(
            "Holder directory refreshed",
            holders=len(holders),
            raw_entries=len(raw)
        )
        return holders


def normalize_holders(raw: List[Holder]) -> Tuple[Holder, ...]:
    """
    Merge entries of the same owner, drop empty balances and sort by address.

    The result is an immutable tuple so a refresh replaces the directory
    wholesale instead of mutating it.
    """
    balances: Dict[str, int] = {}
    decimals: Dict[str, int] = {}

    for holder in raw:
        if holder.balance <= 0:
            continue
        balances[holder.address] = balances.get(holder.address, 0) + holder.balance
        decimals[holder.address] = holder.decimals

    return tuple(
        Holder(address=address, balance=balances[address], decimals=decimals[address])
        for address in sorted(balances)
    )
