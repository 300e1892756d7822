"""
Solana reference adapters for the reward pipeline.
"""

from .holder_source import SolanaHolderSource
from .tax_source import Token2022TaxSource
from .settlement import SolTransferSettlement
from .jupiter_swap import JupiterSwapper
from .transactions import load_keypair

__all__ = [
    "SolanaHolderSource",
    "Token2022TaxSource",
    "SolTransferSettlement",
    "JupiterSwapper",
    "load_keypair",
]
