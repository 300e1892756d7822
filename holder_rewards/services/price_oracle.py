"""
Price oracle adapter: cached token and SOL prices with staleness tolerance.
"""

from decimal import Decimal
from typing import Optional

import structlog

from holder_rewards.cache import SWRCache, UpstreamGuard
from holder_rewards.core.exceptions import TransientUpstreamError
from .interfaces import PriceSource


logger = structlog.get_logger(__name__)

TOKEN_PRICE_KEY = "token_usd"
SOL_PRICE_KEY = "sol_usd"


class PriceOracle:
    """Cached wrapper around a ``PriceSource``."""

    def __init__(
        self,
        source: PriceSource,
        guard: UpstreamGuard,
        ttl: float = 300.0,
        hard_ttl: float = 3600.0,
        cache: Optional[SWRCache] = None
    ):
        self.source = source
        self.guard = guard
        self.cache = cache or SWRCache("prices", ttl=ttl, hard_ttl=hard_ttl)
        self.logger = logger.bind(service="price_oracle")

    async def get_price(self) -> Decimal:
        """USD per whole project token."""
        return await self.cache.get_or_fetch(TOKEN_PRICE_KEY, self._fetch_token_price)

    async def get_sol_price(self) -> Decimal:
        return await self.cache.get_or_fetch(SOL_PRICE_KEY, self._fetch_sol_price)

    async def _fetch_token_price(self) -> Decimal:
        price = await self.guard.call(self.source.fetch_price, operation="fetch_price")
        return self._validate(price, "token")

    async def _fetch_sol_price(self) -> Decimal:
        price = await self.guard.call(self.source.fetch_sol_price_usd, operation="fetch_sol_price_usd")
        return self._validate(price, "sol")

    def _validate(self, price, asset: str) -> Decimal:
        value = Decimal(str(price))
        if value <= 0:
            raise TransientUpstreamError(
                f"Price source returned non-positive {asset} price",
                {"asset": asset, "price": str(value)}
            )
        self.logger.debug("Price updated", asset=asset, price_usd=str(value))
        return value
