"""
Holder source reading Token-2022 accounts of the project mint.
"""

from typing import Dict, List, Optional

import structlog
from solana.rpc.async_api import AsyncClient
from solders.pubkey import Pubkey
from solders.rpc.filter import Memcmp

from holder_rewards.core.config import SolanaConfig
from holder_rewards.services.types import Holder


logger = structlog.get_logger(__name__)

# SPL token account layout
ACCOUNT_BASE_SIZE = 165
OWNER_OFFSET = 32
AMOUNT_OFFSET = 64
ACCOUNT_TYPE_ACCOUNT = 2


def parse_token_account(data: bytes) -> Optional[tuple]:
    """(owner, amount) of a token account, or None if ``data`` is not one."""
    if len(data) < ACCOUNT_BASE_SIZE:
        return None
    if len(data) > ACCOUNT_BASE_SIZE and data[ACCOUNT_BASE_SIZE] != ACCOUNT_TYPE_ACCOUNT:
        return None
    owner = Pubkey.from_bytes(data[OWNER_OFFSET:OWNER_OFFSET + 32])
    amount = int.from_bytes(data[AMOUNT_OFFSET:AMOUNT_OFFSET + 8], "little")
    return str(owner), amount


class SolanaHolderSource:
    """Lists holders via ``getProgramAccounts`` filtered on the mint."""

    def __init__(
        self,
        client: AsyncClient,
        mint: str,
        program_id: str = SolanaConfig.TOKEN_2022_PROGRAM_ID
    ):
        self.client = client
        self.mint = Pubkey.from_string(mint)
        self.program_id = Pubkey.from_string(program_id)
        self._decimals: Optional[int] = None
        self.logger = logger.bind(service="solana_holder_source")

    async def get_decimals(self) -> int:
        if self._decimals is None:
            response = await self.client.get_token_supply(self.mint)
            self._decimals = response.value.decimals
        return self._decimals

    async def fetch_holders(self) -> List[Holder]:
        decimals = await self.get_decimals()

        response = await self.client.get_program_accounts(
            self.program_id,
            encoding="base64",
            filters=[Memcmp(offset=0, bytes_=str(self.mint))]
        )

        balances: Dict[str, int] = {}
        for keyed_account in response.value:
            parsed = parse_token_account(bytes(keyed_account.account.data))
            if parsed is None:
                continue
            owner, amount = parsed
            if amount == 0:
                continue
            balances[owner] = balances.get(owner, 0) + amount

        self.logger.debug(
            "Fetched token accounts",
            accounts=len(response.value),
            holders=len(balances)
        )
        return [
            Holder(address=owner, balance=amount, decimals=decimals)
            for owner, amount in balances.items()
        ]
