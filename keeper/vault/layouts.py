"""
Decoders for the on-chain accounts the keeper reads.

- Token-2022 mint with the TransferFeeConfig extension (withheld fees)
- SPL / Token-2022 token account amount
- Vault address lists (reward exclusions, tax exemptions)
- Holder registry chunks
- Vault tax configuration

All layouts are little-endian; vault accounts carry an 8 byte type
discriminator in front.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Optional, Tuple

from solders.pubkey import Pubkey

ANCHOR_DISCRIMINATOR_LEN = 8
PUBKEY_LEN = 32

# Token-2022
MINT_BASE_LEN = 82
ACCOUNT_BASE_LEN = 165
ACCOUNT_TYPE_MINT = 1
EXT_TRANSFER_FEE_CONFIG = 1
TRANSFER_FEE_CONFIG_LEN = 108
TOKEN_ACCOUNT_AMOUNT_OFFSET = 64
MINT_DECIMALS_OFFSET = 44

_ZERO_KEY = bytes(PUBKEY_LEN)


class LayoutError(ValueError):
    """Account bytes do not match the expected layout."""


class _Reader:
    def __init__(self, data: bytes, offset: int = 0) -> None:
        self.data = data
        self.offset = offset

    def take(self, n: int) -> bytes:
        end = self.offset + n
        if end > len(self.data):
            raise LayoutError(f"truncated account: need {end} bytes, have {len(self.data)}")
        chunk = self.data[self.offset:end]
        self.offset = end
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u16(self) -> int:
        return struct.unpack("<H", self.take(2))[0]

    def u32(self) -> int:
        return struct.unpack("<I", self.take(4))[0]

    def u64(self) -> int:
        return struct.unpack("<Q", self.take(8))[0]

    def pubkey(self) -> Pubkey:
        return Pubkey.from_bytes(self.take(PUBKEY_LEN))

    def boolean(self) -> bool:
        return self.u8() != 0

    def option_pubkey(self) -> Optional[Pubkey]:
        return self.pubkey() if self.u8() else None


# ----------------------------------------------------------------------
# Token-2022
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class TransferFee:
    epoch: int
    maximum_fee: int
    basis_points: int

    def calculate(self, amount: int) -> int:
        """Fee withheld on a transfer of ``amount`` (ceil, capped at maximum_fee)."""
        if amount <= 0 or self.basis_points == 0:
            return 0
        fee = -(-amount * self.basis_points // 10_000)
        return min(fee, self.maximum_fee)


@dataclass(frozen=True)
class TransferFeeConfig:
    config_authority: Optional[Pubkey]
    withdraw_authority: Optional[Pubkey]
    withheld_amount: int
    older: TransferFee
    newer: TransferFee


def _optional_nonzero(raw: bytes) -> Optional[Pubkey]:
    return None if raw == _ZERO_KEY else Pubkey.from_bytes(raw)


def _read_transfer_fee(r: _Reader) -> TransferFee:
    return TransferFee(epoch=r.u64(), maximum_fee=r.u64(), basis_points=r.u16())


def decode_transfer_fee_config(mint_data: bytes) -> TransferFeeConfig:
    """Find and decode the TransferFeeConfig TLV entry of a Token-2022 mint."""
    if len(mint_data) <= ACCOUNT_BASE_LEN:
        raise LayoutError("mint has no extensions")
    if mint_data[ACCOUNT_BASE_LEN] != ACCOUNT_TYPE_MINT:
        raise LayoutError(f"not a mint account (type {mint_data[ACCOUNT_BASE_LEN]})")

    offset = ACCOUNT_BASE_LEN + 1
    while offset + 4 <= len(mint_data):
        ext_type, length = struct.unpack_from("<HH", mint_data, offset)
        offset += 4
        if ext_type == 0 and length == 0:
            break
        if ext_type == EXT_TRANSFER_FEE_CONFIG:
            if length < TRANSFER_FEE_CONFIG_LEN:
                raise LayoutError(f"transfer fee extension too short: {length}")
            r = _Reader(mint_data, offset)
            return TransferFeeConfig(
                config_authority=_optional_nonzero(r.take(PUBKEY_LEN)),
                withdraw_authority=_optional_nonzero(r.take(PUBKEY_LEN)),
                withheld_amount=r.u64(),
                older=_read_transfer_fee(r),
                newer=_read_transfer_fee(r),
            )
        offset += length
    raise LayoutError("mint has no transfer fee extension")


def decode_mint_decimals(mint_data: bytes) -> int:
    if len(mint_data) < MINT_BASE_LEN:
        raise LayoutError(f"not a mint account ({len(mint_data)} bytes)")
    return mint_data[MINT_DECIMALS_OFFSET]


def decode_token_amount(account_data: bytes) -> int:
    if len(account_data) < TOKEN_ACCOUNT_AMOUNT_OFFSET + 8:
        raise LayoutError(f"not a token account ({len(account_data)} bytes)")
    return struct.unpack_from("<Q", account_data, TOKEN_ACCOUNT_AMOUNT_OFFSET)[0]


# ----------------------------------------------------------------------
# Vault accounts
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class AddressList:
    authority: Pubkey
    addresses: Tuple[Pubkey, ...]
    bump: int


def decode_address_list(data: bytes) -> AddressList:
    """RewardExclusions / TaxExemptions: authority, Vec<Pubkey>, bump."""
    r = _Reader(data, ANCHOR_DISCRIMINATOR_LEN)
    authority = r.pubkey()
    count = r.u32()
    addresses = tuple(r.pubkey() for _ in range(count))
    bump = r.u8()
    return AddressList(authority=authority, addresses=addresses, bump=bump)


@dataclass(frozen=True)
class HolderRecord:
    address: Pubkey
    balance: int
    reward_share: int = 0


@dataclass(frozen=True)
class HolderRegistryChunk:
    holders: Tuple[HolderRecord, ...]
    last_snapshot_slot: int
    total_eligible_balance: int
    chunk_id: int
    next_chunk: Optional[Pubkey]
    min_holder_threshold: int


def decode_holder_registry(data: bytes) -> HolderRegistryChunk:
    r = _Reader(data, ANCHOR_DISCRIMINATOR_LEN)
    count = r.u32()
    holders = tuple(
        HolderRecord(address=r.pubkey(), balance=r.u64(), reward_share=r.u64())
        for _ in range(count)
    )
    return HolderRegistryChunk(
        holders=holders,
        last_snapshot_slot=r.u64(),
        total_eligible_balance=r.u64(),
        chunk_id=r.u8(),
        next_chunk=r.option_pubkey(),
        min_holder_threshold=r.u64(),
    )


@dataclass(frozen=True)
class TaxConfig:
    authority: Pubkey
    mint: Pubkey
    fee_authority: Pubkey
    withdraw_authority: Pubkey
    smart_dial_program: Pubkey
    keeper_bot_wallet: Pubkey
    owner_wallet: Pubkey
    treasury_wallet: Pubkey
    total_fees_collected: int
    initialized: bool
    bump: int


def decode_tax_config(data: bytes) -> TaxConfig:
    r = _Reader(data, ANCHOR_DISCRIMINATOR_LEN)
    return TaxConfig(
        authority=r.pubkey(),
        mint=r.pubkey(),
        fee_authority=r.pubkey(),
        withdraw_authority=r.pubkey(),
        smart_dial_program=r.pubkey(),
        keeper_bot_wallet=r.pubkey(),
        owner_wallet=r.pubkey(),
        treasury_wallet=r.pubkey(),
        total_fees_collected=r.u64(),
        initialized=r.boolean(),
        bump=r.u8(),
    )
