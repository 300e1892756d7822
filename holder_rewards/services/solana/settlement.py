"""
SOL transfer settlement with memo-tagged action keys.
"""

from typing import Optional

import structlog
from solana.rpc.async_api import AsyncClient
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import transfer, TransferParams

from holder_rewards.core.config import SolanaConfig
from holder_rewards.core.exceptions import InsufficientFundsError
from .transactions import memo_instruction, send_instructions


logger = structlog.get_logger(__name__)

LOOKUP_SIGNATURE_LIMIT = 1000


class SolTransferSettlement:
    """
    Pays lamports from the reward wallet.

    Every transfer carries its action key in a memo so ``lookup_action``
    can find it again in the wallet's recent signatures.
    """

    def __init__(self, client: AsyncClient, payer: Keypair):
        self.client = client
        self.payer = payer
        self.logger = logger.bind(service="sol_transfer_settlement")

    async def get_balance(self) -> int:
        response = await self.client.get_balance(self.payer.pubkey())
        return response.value

    async def transfer(self, to: str, amount: int, action_key: str) -> str:
        recipient = Pubkey.from_string(to)

        available = await self.get_balance()
        required = amount + SolanaConfig.TRANSFER_FEE_LAMPORTS
        if available < required:
            raise InsufficientFundsError(required, available)

        instructions = [
            transfer(TransferParams(
                from_pubkey=self.payer.pubkey(),
                to_pubkey=recipient,
                lamports=amount
            )),
            memo_instruction(action_key, self.payer.pubkey()),
        ]
        signature = await send_instructions(self.client, self.payer, instructions)

        self.logger.debug("Transfer confirmed", to=to, lamports=amount, signature=signature)
        return signature

    async def lookup_action(self, action_key: str) -> Optional[str]:
        response = await self.client.get_signatures_for_address(
            self.payer.pubkey(),
            limit=LOOKUP_SIGNATURE_LIMIT
        )
        for info in response.value:
            if info.err is None and info.memo and action_key in info.memo:
                return str(info.signature)
        return None
