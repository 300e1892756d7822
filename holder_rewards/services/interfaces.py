"""
Narrow interfaces of the external collaborators.

The reward core only talks to these; the Solana, Jupiter and CoinGecko
adapters implement them, and tests substitute in-memory fakes.
"""

from decimal import Decimal
from typing import List, Optional, Protocol, runtime_checkable

from .types import Holder, SwapReceipt


class HolderSource(Protocol):
    async def fetch_holders(self) -> List[Holder]:
        ...


class PriceSource(Protocol):
    async def fetch_price(self) -> Decimal:
        """USD per whole project token."""
        ...

    async def fetch_sol_price_usd(self) -> Decimal:
        ...


class TaxSource(Protocol):
    async def withdraw_withheld(self) -> int:
        """Move newly withheld tax into custody, returning raw units moved."""
        ...


class Swapper(Protocol):
    async def swap(self, amount_in: int) -> SwapReceipt:
        ...


class Settlement(Protocol):
    async def transfer(self, to: str, amount: int, action_key: str) -> str:
        """Send lamports and return the action id (transaction signature)."""
        ...


@runtime_checkable
class ActionLookup(Protocol):
    """Optional capability of a settlement primitive."""

    async def lookup_action(self, action_key: str) -> Optional[str]:
        ...
