"""
Swap primitive backed by the Jupiter aggregator HTTP API.
"""

import base64
from typing import Any, Dict

import aiohttp
import structlog
from solana.rpc.async_api import AsyncClient
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction

from holder_rewards.core.config import SolanaConfig
from holder_rewards.core.exceptions import HarvestError, RateLimitError
from holder_rewards.services.types import SwapReceipt


logger = structlog.get_logger(__name__)


class JupiterSwapper:
    """Sells the project token for SOL through Jupiter."""

    def __init__(
        self,
        client: AsyncClient,
        keypair: Keypair,
        input_mint: str,
        base_url: str = "https://quote-api.jup.ag/v6",
        slippage_bps: int = 100,
        output_mint: str = SolanaConfig.WSOL_MINT,
        http_timeout: float = 20.0
    ):
        self.client = client
        self.keypair = keypair
        self.input_mint = input_mint
        self.output_mint = output_mint
        self.base_url = base_url.rstrip("/")
        self.slippage_bps = slippage_bps
        self.http_timeout = http_timeout
        self.logger = logger.bind(service="jupiter_swapper")

    async def swap(self, amount_in: int) -> SwapReceipt:
        timeout = aiohttp.ClientTimeout(total=self.http_timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            quote = await self._get_quote(session, amount_in)
            swap_transaction = await self._get_swap_transaction(session, quote)

        raw = VersionedTransaction.from_bytes(base64.b64decode(swap_transaction))
        signed = VersionedTransaction(raw.message, [self.keypair])

        response = await self.client.send_raw_transaction(
            bytes(signed),
            opts=TxOpts(skip_preflight=False, max_retries=2)
        )
        signature = response.value
        confirmation = await self.client.confirm_transaction(signature)
        status = confirmation.value[0] if confirmation.value else None
        if status is not None and status.err:
            raise HarvestError(f"Swap transaction failed: {status.err}", {"signature": str(signature)})

        amount_out = int(quote["outAmount"])
        self.logger.info(
            "Swap confirmed",
            amount_in=amount_in,
            amount_out=amount_out,
            price_impact=quote.get("priceImpactPct"),
            signature=str(signature)
        )
        return SwapReceipt(amount_out=amount_out, signature=str(signature))

    async def _get_quote(self, session: aiohttp.ClientSession, amount_in: int) -> Dict[str, Any]:
        params = {
            "inputMint": self.input_mint,
            "outputMint": self.output_mint,
            "amount": str(amount_in),
            "slippageBps": str(self.slippage_bps),
        }
        async with session.get(f"{self.base_url}/quote", params=params) as response:
            await self._raise_for_status(response, "quote")
            return await response.json()

    async def _get_swap_transaction(self, session: aiohttp.ClientSession, quote: Dict[str, Any]) -> str:
        payload = {
            "quoteResponse": quote,
            "userPublicKey": str(self.keypair.pubkey()),
            "wrapAndUnwrapSol": True,
        }
        async with session.post(f"{self.base_url}/swap", json=payload) as response:
            await self._raise_for_status(response, "swap")
            data = await response.json()
        if "swapTransaction" not in data:
            raise HarvestError("Jupiter returned no swap transaction", {"response": data})
        return data["swapTransaction"]

    @staticmethod
    async def _raise_for_status(response: aiohttp.ClientResponse, step: str) -> None:
        if response.status == 429:
            raise RateLimitError(f"Jupiter {step} rate limited", {"status": 429})
        if response.status != 200:
            body = await response.text()
            raise HarvestError(
                f"Jupiter {step} failed with HTTP {response.status}",
                {"status": response.status, "body": body[:500]}
            )
