"""
Ledger package - RPC client contract, address derivation and shared types.
"""

from keeper.ledger.client import LedgerClient, SolanaLedgerClient
from keeper.ledger.derivation import VaultAddresses, derive_address, instruction_discriminator
from keeper.ledger.types import AccountSnapshot, Commitment, ConfirmationOutcome, ConfirmationResult

__all__ = [
    "LedgerClient",
    "SolanaLedgerClient",
    "VaultAddresses",
    "derive_address",
    "instruction_discriminator",
    "AccountSnapshot",
    "Commitment",
    "ConfirmationOutcome",
    "ConfirmationResult",
]
