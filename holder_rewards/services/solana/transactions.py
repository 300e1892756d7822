"""
Small Solana helpers shared by the chain adapters: key loading, associated
token accounts and signed transaction submission.
"""

import json
from typing import List

import base58
from solana.rpc.async_api import AsyncClient
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from holder_rewards.core.exceptions import ConfigurationError, SettlementError


ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
MEMO_PROGRAM_ID = Pubkey.from_string("MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr")


def load_keypair(secret: str) -> Keypair:
    """Keypair from a base58 secret key or a JSON byte array."""
    secret = secret.strip()
    try:
        if secret.startswith("["):
            return Keypair.from_bytes(bytes(json.loads(secret)))
        return Keypair.from_bytes(base58.b58decode(secret))
    except Exception as e:
        raise ConfigurationError("Invalid reward wallet private key", {"error": str(e)}) from e


def associated_token_address(owner: Pubkey, mint: Pubkey, token_program: Pubkey) -> Pubkey:
    address, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID
    )
    return address


def memo_instruction(text: str, signer: Pubkey) -> Instruction:
    return Instruction(
        program_id=MEMO_PROGRAM_ID,
        data=text.encode("utf-8"),
        accounts=[AccountMeta(pubkey=signer, is_signer=True, is_writable=False)]
    )


async def send_instructions(
    client: AsyncClient,
    payer: Keypair,
    instructions: List[Instruction]
) -> str:
    """Sign with ``payer``, send and confirm. Returns the signature."""
    recent_blockhash = await client.get_latest_blockhash()

    transaction = Transaction.new_signed_with_payer(
        instructions,
        payer.pubkey(),
        [payer],
        recent_blockhash.value.blockhash
    )

    response = await client.send_transaction(transaction)
    signature = response.value

    confirmation = await client.confirm_transaction(signature)
    status = confirmation.value[0] if confirmation.value else None
    if status is not None and status.err:
        raise SettlementError(
            f"Transaction failed: {status.err}",
            {"signature": str(signature)}
        )

    return str(signature)
