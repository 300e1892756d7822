"""
CoinGecko price source for the project token and SOL.
"""

from decimal import Decimal
from typing import Any, Dict

import aiohttp
import structlog

from holder_rewards.core.exceptions import RateLimitError, TransientUpstreamError


logger = structlog.get_logger(__name__)


class CoinGeckoPriceSource:
    """Fetches USD prices from the CoinGecko simple price API. No caching here."""

    def __init__(
        self,
        token_mint: str,
        base_url: str = "https://api.coingecko.com/api/v3",
        timeout: float = 10.0
    ):
        self.token_mint = token_mint
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.logger = logger.bind(service="coingecko")

    async def fetch_price(self) -> Decimal:
        data = await self._get(
            "/simple/token_price/solana",
            {"contract_addresses": self.token_mint, "vs_currencies": "usd"}
        )
        entry = data.get(self.token_mint) or data.get(self.token_mint.lower()) or {}
        return self._extract(entry, "token")

    async def fetch_sol_price_usd(self) -> Decimal:
        data = await self._get("/simple/price", {"ids": "solana", "vs_currencies": "usd"})
        return self._extract(data.get("solana", {}), "solana")

    async def _get(self, path: str, params: Dict[str, str]) -> Dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(f"{self.base_url}{path}", params=params) as response:
                if response.status == 429:
                    raise RateLimitError("CoinGecko rate limit", {"path": path})
                if response.status != 200:
                    raise TransientUpstreamError(
                        f"CoinGecko returned HTTP {response.status}",
                        {"path": path, "status": response.status}
                    )
                return await response.json()

    def _extract(self, entry: Dict[str, Any], asset: str) -> Decimal:
        price = entry.get("usd")
        if price is None:
            raise TransientUpstreamError("CoinGecko returned no USD price", {"asset": asset})
        self.logger.debug("Price fetched", asset=asset, price_usd=price)
        return Decimal(str(price))
