"""
Tax source for a Token-2022 mint with the transfer fee extension.

Each withdrawal first harvests fees withheld on holder accounts into the
mint, then withdraws everything withheld on the mint into the reward
wallet's token account. The amount reported is the balance change of that
account.
"""

from typing import List

import structlog
from solana.rpc.async_api import AsyncClient
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.rpc.filter import Memcmp

from holder_rewards.core.config import SolanaConfig
from .holder_source import ACCOUNT_BASE_SIZE
from .transactions import associated_token_address, send_instructions


logger = structlog.get_logger(__name__)

TRANSFER_FEE_EXTENSION = 26
HARVEST_WITHHELD_TO_MINT = 4
WITHDRAW_WITHHELD_FROM_MINT = 2

EXTENSION_TRANSFER_FEE_AMOUNT = 2
HARVEST_CHUNK_SIZE = 20


def withheld_amount(data: bytes) -> int:
    """Withheld transfer fee recorded in a Token-2022 account's extensions."""
    offset = ACCOUNT_BASE_SIZE + 1
    while offset + 4 <= len(data):
        ext_type = int.from_bytes(data[offset:offset + 2], "little")
        length = int.from_bytes(data[offset + 2:offset + 4], "little")
        value = data[offset + 4:offset + 4 + length]
        if ext_type == EXTENSION_TRANSFER_FEE_AMOUNT and length >= 8:
            return int.from_bytes(value[:8], "little")
        if ext_type == 0:
            break
        offset += 4 + length
    return 0


class Token2022TaxSource:
    """Moves withheld transfer fees into the reward wallet."""

    def __init__(
        self,
        client: AsyncClient,
        mint: str,
        authority: Keypair,
        program_id: str = SolanaConfig.TOKEN_2022_PROGRAM_ID
    ):
        self.client = client
        self.mint = Pubkey.from_string(mint)
        self.authority = authority
        self.program_id = Pubkey.from_string(program_id)
        self.destination = associated_token_address(authority.pubkey(), self.mint, self.program_id)
        self.logger = logger.bind(service="token2022_tax_source")

    async def withdraw_withheld(self) -> int:
        before = await self._destination_balance()

        sources = await self._accounts_with_withheld_fees()
        for start in range(0, len(sources), HARVEST_CHUNK_SIZE):
            chunk = sources[start:start + HARVEST_CHUNK_SIZE]
            signature = await send_instructions(
                self.client,
                self.authority,
                [self._harvest_instruction(chunk)]
            )
            self.logger.info("Harvested withheld fees to mint", accounts=len(chunk), signature=signature)

        signature = await send_instructions(
            self.client,
            self.authority,
            [self._withdraw_instruction()]
        )

        after = await self._destination_balance()
        withdrawn = max(0, after - before)
        self.logger.info("Withdrew withheld fees", amount=withdrawn, signature=signature)
        return withdrawn

    async def _destination_balance(self) -> int:
        response = await self.client.get_token_account_balance(self.destination)
        return int(response.value.amount)

    async def _accounts_with_withheld_fees(self) -> List[Pubkey]:
        response = await self.client.get_program_accounts(
            self.program_id,
            encoding="base64",
            filters=[Memcmp(offset=0, bytes_=str(self.mint))]
        )
        return [
            keyed.pubkey
            for keyed in response.value
            if withheld_amount(bytes(keyed.account.data)) > 0
        ]

    def _harvest_instruction(self, sources: List[Pubkey]) -> Instruction:
        accounts = [AccountMeta(pubkey=self.mint, is_signer=False, is_writable=True)]
        accounts.extend(AccountMeta(pubkey=s, is_signer=False, is_writable=True) for s in sources)
        return Instruction(
            program_id=self.program_id,
            data=bytes([TRANSFER_FEE_EXTENSION, HARVEST_WITHHELD_TO_MINT]),
            accounts=accounts
        )

    def _withdraw_instruction(self) -> Instruction:
        return Instruction(
            program_id=self.program_id,
            data=bytes([TRANSFER_FEE_EXTENSION, WITHDRAW_WITHHELD_FROM_MINT]),
            accounts=[
                AccountMeta(pubkey=self.mint, is_signer=False, is_writable=True),
                AccountMeta(pubkey=self.destination, is_signer=False, is_writable=True),
                AccountMeta(pubkey=self.authority.pubkey(), is_signer=True, is_writable=False),
            ]
        )
