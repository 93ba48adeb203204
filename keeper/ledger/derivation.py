"""
Instruction discriminators and program derived addresses.

Both must match the on-chain program byte for byte:

- discriminator: first 8 bytes of sha256("global:" + instruction_name)
- derived address: solders' canonical find_program_address (bump search
  from 255 down until the hash lands off the ed25519 curve)
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Dict, Iterable, Sequence, Tuple, Union

from solders.pubkey import Pubkey

# Vault instructions
INITIALIZE = "initialize"
HARVEST_FEES = "harvest_fees"
DISTRIBUTE_REWARDS = "distribute_rewards"
MANAGE_EXCLUSIONS = "manage_exclusions"
UPDATE_CONFIG = "update_config"
EMERGENCY_WITHDRAW_VAULT = "emergency_withdraw_vault"
EMERGENCY_WITHDRAW_WITHHELD = "emergency_withdraw_withheld"

VAULT_INSTRUCTIONS: Tuple[str, ...] = (
    INITIALIZE,
    HARVEST_FEES,
    DISTRIBUTE_REWARDS,
    MANAGE_EXCLUSIONS,
    UPDATE_CONFIG,
    EMERGENCY_WITHDRAW_VAULT,
    EMERGENCY_WITHDRAW_WITHHELD,
)

# Seeds for vault owned accounts
TAX_CONFIG_SEED = b"tax_config"
TAX_AUTHORITY_SEED = b"tax_authority"
TAX_HOLDING_SEED = b"tax_holding"
REWARD_EXCLUSIONS_SEED = b"reward_exclusions"
TAX_EXEMPTIONS_SEED = b"tax_exemptions"
HOLDER_REGISTRY_SEED = b"holder_registry"

# Well-known programs
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")

# Wrapped SOL; as a swap output it means native SOL to the signer
NATIVE_MINT = Pubkey.from_string("So11111111111111111111111111111111111111112")

Seed = Union[bytes, Pubkey]


def instruction_discriminator(name: str) -> bytes:
    """Anchor-style 8 byte instruction identifier."""
    if not name:
        raise ValueError("instruction name must not be empty")
    return hashlib.sha256(f"global:{name}".encode("utf-8")).digest()[:8]


def account_discriminator(account_name: str) -> bytes:
    """Anchor-style 8 byte account type identifier."""
    return hashlib.sha256(f"account:{account_name}".encode("utf-8")).digest()[:8]


def _seed_bytes(seed: Seed) -> bytes:
    if isinstance(seed, Pubkey):
        return bytes(seed)
    if isinstance(seed, (bytes, bytearray)):
        return bytes(seed)
    raise TypeError(f"unsupported seed type: {type(seed).__name__}")


def derive_address(seeds: Sequence[Seed], program_id: Pubkey) -> Tuple[Pubkey, int]:
    """
    Canonical program derived address for ``seeds`` under ``program_id``.

    Returns:
        (address, bump). Pure, no I/O.
    """
    raw = [_seed_bytes(s) for s in seeds]
    for s in raw:
        if len(s) > 32:
            raise ValueError(f"seed longer than 32 bytes: {len(s)}")
    return Pubkey.find_program_address(raw, program_id)


def holder_registry_seeds(chunk: int) -> Tuple[bytes, bytes]:
    if not 0 <= chunk <= 255:
        raise ValueError(f"holder registry chunk out of range: {chunk}")
    return (HOLDER_REGISTRY_SEED, bytes([chunk]))


def associated_token_address(owner: Pubkey, mint: Pubkey, token_program: Pubkey = TOKEN_PROGRAM_ID) -> Pubkey:
    """Associated token account of ``owner`` for ``mint``."""
    address, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


@dataclass(frozen=True)
class VaultAddresses:
    """Every derived address the keeper touches for one vault program."""
    program_id: Pubkey
    tax_config: Pubkey
    tax_authority: Pubkey
    tax_holding: Pubkey
    reward_exclusions: Pubkey
    tax_exemptions: Pubkey

    @classmethod
    def for_program(cls, program_id: Pubkey) -> "VaultAddresses":
        return cls(
            program_id=program_id,
            tax_config=derive_address([TAX_CONFIG_SEED], program_id)[0],
            tax_authority=derive_address([TAX_AUTHORITY_SEED], program_id)[0],
            tax_holding=derive_address([TAX_HOLDING_SEED], program_id)[0],
            reward_exclusions=derive_address([REWARD_EXCLUSIONS_SEED], program_id)[0],
            tax_exemptions=derive_address([TAX_EXEMPTIONS_SEED], program_id)[0],
        )

    def holder_registry(self, chunk: int) -> Pubkey:
        return derive_address(holder_registry_seeds(chunk), self.program_id)[0]

    def to_dict(self, registry_chunks: Iterable[int] = (0,)) -> Dict[str, str]:
        out = {
            "program_id": str(self.program_id),
            "tax_config": str(self.tax_config),
            "tax_authority": str(self.tax_authority),
            "tax_holding": str(self.tax_holding),
            "reward_exclusions": str(self.reward_exclusions),
            "tax_exemptions": str(self.tax_exemptions),
        }
        for chunk in registry_chunks:
            out[f"holder_registry_{chunk}"] = str(self.holder_registry(chunk))
        return out


def all_discriminators() -> Dict[str, str]:
    """Hex discriminators for every vault instruction."""
    return {name: instruction_discriminator(name).hex() for name in VAULT_INSTRUCTIONS}
