"""
Test the Solana adapters' parsing and settlement checks without a network.
"""

import json
from types import SimpleNamespace

import base58
import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.rpc.filter import Memcmp

from holder_rewards.core.exceptions import ConfigurationError, InsufficientFundsError
from holder_rewards.services.solana import SolTransferSettlement, load_keypair
from holder_rewards.services.solana.holder_source import SolanaHolderSource, parse_token_account
from holder_rewards.services.solana.tax_source import withheld_amount


def token_account(owner: Pubkey, amount: int, extensions: bytes = b"") -> bytes:
    data = bytearray(165)
    data[32:64] = bytes(owner)
    data[64:72] = amount.to_bytes(8, "little")
    if extensions:
        data += bytes([2]) + extensions
    return bytes(data)


def tlv(ext_type: int, value: bytes) -> bytes:
    return ext_type.to_bytes(2, "little") + len(value).to_bytes(2, "little") + value


def test_parse_token_account():
    owner = Keypair().pubkey()

    assert parse_token_account(token_account(owner, 1234)) == (str(owner), 1234)


def test_parse_rejects_short_and_mint_data():
    owner = Keypair().pubkey()
    mint_like = bytearray(token_account(owner, 1, extensions=tlv(1, b"\x00" * 8)))
    mint_like[165] = 1

    assert parse_token_account(b"\x00" * 82) is None
    assert parse_token_account(bytes(mint_like)) is None


def test_withheld_amount_reads_transfer_fee_extension():
    owner = Keypair().pubkey()
    extensions = tlv(7, b"\x01") + tlv(2, (987).to_bytes(8, "little"))

    assert withheld_amount(token_account(owner, 5, extensions)) == 987
    assert withheld_amount(token_account(owner, 5)) == 0


def test_load_keypair_formats():
    keypair = Keypair()
    as_json = json.dumps(list(bytes(keypair)))
    as_base58 = base58.b58encode(bytes(keypair)).decode()

    assert load_keypair(as_json).pubkey() == keypair.pubkey()
    assert load_keypair(as_base58).pubkey() == keypair.pubkey()

    with pytest.raises(ConfigurationError):
        load_keypair("not-a-key")


class FakeRpcClient:
    def __init__(self, balance=0, signatures=()):
        self.balance = balance
        self.signatures = list(signatures)

    async def get_balance(self, pubkey):
        return SimpleNamespace(value=self.balance)

    async def get_signatures_for_address(self, pubkey, limit=None):
        return SimpleNamespace(value=self.signatures)


@pytest.mark.asyncio
async def test_transfer_checks_balance_first():
    settlement = SolTransferSettlement(FakeRpcClient(balance=1000), Keypair())

    with pytest.raises(InsufficientFundsError) as exc_info:
        await settlement.transfer(str(Keypair().pubkey()), 1000, "2024-03-01:1:A")

    assert exc_info.value.details["available"] == 1000


@pytest.mark.asyncio
async def test_lookup_action_matches_memo():
    infos = [
        SimpleNamespace(err=None, memo="[14] 2024-03-01:1:A", signature="sig-a"),
        SimpleNamespace(err={"InstructionError": []}, memo="[14] 2024-03-01:1:B", signature="sig-b"),
    ]
    settlement = SolTransferSettlement(FakeRpcClient(signatures=infos), Keypair())

    assert await settlement.lookup_action("2024-03-01:1:A") == "sig-a"
    assert await settlement.lookup_action("2024-03-01:1:B") is None
    assert await settlement.lookup_action("2024-03-01:2:A") is None


class FakeProgramAccountsClient:
    def __init__(self, accounts, decimals=6):
        self.accounts = accounts
        self.decimals = decimals
        self.requests = []

    async def get_token_supply(self, mint):
        return SimpleNamespace(value=SimpleNamespace(decimals=self.decimals))

    async def get_program_accounts(self, program_id, encoding=None, filters=None):
        self.requests.append((program_id, filters))
        return SimpleNamespace(value=[
            SimpleNamespace(account=SimpleNamespace(data=data)) for data in self.accounts
        ])


@pytest.mark.asyncio
async def test_fetch_holders_filters_on_mint_and_merges_owners():
    mint = Keypair().pubkey()
    alice, bob = Keypair().pubkey(), Keypair().pubkey()
    client = FakeProgramAccountsClient([
        token_account(alice, 100),
        token_account(alice, 50),
        token_account(bob, 0),
    ])

    holders = await SolanaHolderSource(client, str(mint)).fetch_holders()

    assert [(h.address, h.balance, h.decimals) for h in holders] == [(str(alice), 150, 6)]
    _, filters = client.requests[0]
    assert isinstance(filters[0], Memcmp)
    assert filters[0].offset == 0
