"""
VaultGateway: builds, submits and confirms vault program instructions.

The gateway owns the mapping between keeper intents (harvest, distribute,
manage an exclusion, pay the owner share) and the wire format of the vault
program and the token programs, and decodes the vault's accounts into
typed state. It never decides *whether* to act; that
is the orchestrator's job.

Confirmation policy for every submission:
    CONFIRMED -> receipt
    FAILED    -> LedgerTransactionFailed
    TIMED_OUT -> Indeterminate (caller must re-query before retrying)
"""

from __future__ import annotations

import json
import logging
import struct
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from keeper.errors import (
    ConfigValidationError,
    Indeterminate,
    LedgerTransactionFailed,
    NothingToHarvest,
    StaleExclusionSet,
)
from keeper.ledger.client import LedgerClient
from keeper.ledger.derivation import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    DISTRIBUTE_REWARDS,
    HARVEST_FEES,
    MANAGE_EXCLUSIONS,
    SYSTEM_PROGRAM_ID,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    VaultAddresses,
    associated_token_address,
    instruction_discriminator,
)
from keeper.ledger.types import ConfirmationOutcome, ConfirmationResult
from keeper.vault.allocation import Allocation, ExclusionSet
from keeper.vault.layouts import (
    HolderRecord,
    TaxConfig,
    decode_address_list,
    decode_holder_registry,
    decode_mint_decimals,
    decode_tax_config,
    decode_transfer_fee_config,
)

log = logging.getLogger("keeper")

OnSubmitted = Callable[[str, int], Awaitable[None]]

ATA_CREATE_IDEMPOTENT = 1
TOKEN_TRANSFER_CHECKED = 12


class ExclusionAction(IntEnum):
    ADD = 0
    REMOVE = 1


class ExclusionListKind(IntEnum):
    REWARD = 0
    TAX = 1


@dataclass(frozen=True)
class HarvestReceipt:
    signature: str
    amount: int
    slot: Optional[int] = None


@dataclass(frozen=True)
class DistributionReceipt:
    signature: str
    amount: int
    recipients: int
    slot: Optional[int] = None


@dataclass(frozen=True)
class OwnerShareReceipt:
    signature: str
    amount: int
    owner: str
    slot: Optional[int] = None


@dataclass
class VaultGatewayConfig:
    """Configuration for VaultGateway."""
    harvest_threshold: int = 500_000
    exclusion_max_age_sec: float = 120.0
    confirm_timeout_sec: float = 60.0
    registry_max_chunks: int = 16
    reward_token_program: Pubkey = TOKEN_PROGRAM_ID
    log_event_callback: Optional[Callable[..., None]] = None

    @classmethod
    def from_settings(cls, settings, reward_token_program: Pubkey = TOKEN_PROGRAM_ID) -> "VaultGatewayConfig":
        return cls(
            harvest_threshold=settings.harvest_threshold,
            exclusion_max_age_sec=settings.exclusion_max_age_sec,
            confirm_timeout_sec=settings.confirm_timeout_sec,
            registry_max_chunks=settings.registry_max_chunks,
            reward_token_program=reward_token_program,
        )


class VaultGateway:
    """Typed access to one vault program instance."""

    def __init__(
        self,
        ledger: LedgerClient,
        program_id: Pubkey,
        token_mint: Pubkey,
        reward_mint: Pubkey,
        keeper: Keypair,
        config: Optional[VaultGatewayConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger
        self.program_id = program_id
        self.token_mint = token_mint
        self.reward_mint = reward_mint
        self.keeper = keeper
        self.config = config or VaultGatewayConfig()
        self._clock = clock

        self.addresses = VaultAddresses.for_program(program_id)
        self.holding_token_account = associated_token_address(
            self.addresses.tax_holding, token_mint, TOKEN_2022_PROGRAM_ID
        )
        self.keeper_token_account = associated_token_address(keeper.pubkey(), token_mint, TOKEN_2022_PROGRAM_ID)
        self.keeper_reward_account = associated_token_address(
            keeper.pubkey(), reward_mint, self.config.reward_token_program
        )

        self._exclusions: Optional[ExclusionSet] = None
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        payload = {"event": event, "component": "vault", **kwargs}
        log.info(json.dumps(payload, default=str))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_harvestable_balance(self) -> int:
        """Withheld fees currently sitting on the mint, read fresh from the ledger."""
        data = await self.ledger.get_account(self.token_mint)
        if data is None:
            raise ConfigValidationError(f"token mint {self.token_mint} not found on ledger")
        return decode_transfer_fee_config(data).withheld_amount

    async def get_tax_config(self) -> Optional[TaxConfig]:
        data = await self.ledger.get_account(self.addresses.tax_config)
        return None if data is None else decode_tax_config(data)

    async def get_keeper_token_balance(self) -> int:
        return await self.ledger.get_token_balance(self.keeper_token_account)

    async def get_keeper_reward_balance(self) -> int:
        return await self.ledger.get_token_balance(self.keeper_reward_account)

    async def get_keeper_sol_balance(self) -> int:
        return await self.ledger.get_balance(self.keeper.pubkey())

    @property
    def exclusions(self) -> Optional[ExclusionSet]:
        return self._exclusions

    async def refresh_exclusions(self) -> ExclusionSet:
        """Re-read both exclusion lists. A list account that does not exist is empty."""
        reward_data = await self.ledger.get_account(self.addresses.reward_exclusions)
        tax_data = await self.ledger.get_account(self.addresses.tax_exemptions)
        reward = decode_address_list(reward_data).addresses if reward_data else ()
        tax = decode_address_list(tax_data).addresses if tax_data else ()
        self._exclusions = ExclusionSet.from_addresses(reward, tax, fetched_at=self._clock())
        self._log_event(
            "exclusions_refreshed",
            reward_excluded=len(self._exclusions.reward_excluded),
            tax_exempt=len(self._exclusions.tax_exempt),
        )
        return self._exclusions

    async def get_holders(self) -> List[HolderRecord]:
        """Walk the holder registry chunks until one is missing or has no successor."""
        holders: List[HolderRecord] = []
        for chunk in range(self.config.registry_max_chunks):
            data = await self.ledger.get_account(self.addresses.holder_registry(chunk))
            if data is None:
                break
            decoded = decode_holder_registry(data)
            holders.extend(decoded.holders)
            if decoded.next_chunk is None:
                break
        return holders

    # ------------------------------------------------------------------
    # Instructions
    # ------------------------------------------------------------------

    def build_harvest_instruction(self) -> Instruction:
        accounts = [
            AccountMeta(self.keeper.pubkey(), is_signer=True, is_writable=True),
            AccountMeta(self.addresses.tax_config, is_signer=False, is_writable=False),
            AccountMeta(self.addresses.tax_authority, is_signer=False, is_writable=False),
            AccountMeta(self.token_mint, is_signer=False, is_writable=True),
            AccountMeta(self.addresses.tax_holding, is_signer=False, is_writable=False),
            AccountMeta(self.holding_token_account, is_signer=False, is_writable=True),
            AccountMeta(self.keeper_token_account, is_signer=False, is_writable=True),
            AccountMeta(TOKEN_2022_PROGRAM_ID, is_signer=False, is_writable=False),
        ]
        return Instruction(self.program_id, instruction_discriminator(HARVEST_FEES), accounts)

    def build_distribute_instruction(self, allocations: Sequence[Allocation]) -> Instruction:
        """distribute_rewards(total: u64, recipients: Vec<(Pubkey, u64)>)."""
        total = sum(a.amount for a in allocations)
        data = bytearray(instruction_discriminator(DISTRIBUTE_REWARDS))
        data += struct.pack("<QI", total, len(allocations))
        recipient_accounts = []
        for a in allocations:
            owner = Pubkey.from_string(a.recipient)
            data += bytes(owner) + struct.pack("<Q", a.amount)
            recipient_accounts.append(AccountMeta(
                associated_token_address(owner, self.reward_mint, self.config.reward_token_program),
                is_signer=False,
                is_writable=True,
            ))
        accounts = [
            AccountMeta(self.keeper.pubkey(), is_signer=True, is_writable=True),
            AccountMeta(self.addresses.tax_config, is_signer=False, is_writable=False),
            AccountMeta(self.addresses.reward_exclusions, is_signer=False, is_writable=False),
            AccountMeta(self.reward_mint, is_signer=False, is_writable=False),
            AccountMeta(self.keeper_reward_account, is_signer=False, is_writable=True),
            AccountMeta(self.config.reward_token_program, is_signer=False, is_writable=False),
            *recipient_accounts,
        ]
        return Instruction(self.program_id, bytes(data), accounts)

    def build_manage_exclusion_instruction(
        self,
        action: ExclusionAction,
        list_kind: ExclusionListKind,
        address: Pubkey,
        authority: Pubkey,
    ) -> Instruction:
        data = instruction_discriminator(MANAGE_EXCLUSIONS) + bytes([int(action), int(list_kind)]) + bytes(address)
        accounts = [
            AccountMeta(authority, is_signer=True, is_writable=True),
            AccountMeta(self.addresses.tax_config, is_signer=False, is_writable=False),
            AccountMeta(self.addresses.reward_exclusions, is_signer=False, is_writable=True),
            AccountMeta(self.addresses.tax_exemptions, is_signer=False, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        ]
        return Instruction(self.program_id, data, accounts)

    def build_owner_share_instructions(self, owner: Pubkey, amount: int, decimals: int) -> List[Instruction]:
        """Create the owner's token account if missing, then transfer_checked ``amount`` of the taxed token."""
        destination = associated_token_address(owner, self.token_mint, TOKEN_2022_PROGRAM_ID)
        create = Instruction(
            ASSOCIATED_TOKEN_PROGRAM_ID,
            bytes([ATA_CREATE_IDEMPOTENT]),
            [
                AccountMeta(self.keeper.pubkey(), is_signer=True, is_writable=True),
                AccountMeta(destination, is_signer=False, is_writable=True),
                AccountMeta(owner, is_signer=False, is_writable=False),
                AccountMeta(self.token_mint, is_signer=False, is_writable=False),
                AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
                AccountMeta(TOKEN_2022_PROGRAM_ID, is_signer=False, is_writable=False),
            ],
        )
        transfer = Instruction(
            TOKEN_2022_PROGRAM_ID,
            bytes([TOKEN_TRANSFER_CHECKED]) + struct.pack("<QB", amount, decimals),
            [
                AccountMeta(self.keeper_token_account, is_signer=False, is_writable=True),
                AccountMeta(self.token_mint, is_signer=False, is_writable=False),
                AccountMeta(destination, is_signer=False, is_writable=True),
                AccountMeta(self.keeper.pubkey(), is_signer=True, is_writable=False),
            ],
        )
        return [create, transfer]

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    async def _submit(
        self,
        what: str,
        instructions: Sequence[Instruction],
        amount: int,
        on_submitted: Optional[OnSubmitted],
        **fields: Any,
    ) -> str:
        """Submit and hand the signature to ``on_submitted`` before waiting on it."""
        try:
            signature = await self.ledger.submit(instructions, [self.keeper])
        except Indeterminate as exc:
            # Possibly broadcast; record it so the next tick reconciles instead of resending.
            self._log_event(f"{what}_unacknowledged", signature=exc.signature, amount=amount, **fields)
            if on_submitted is not None and exc.signature:
                await on_submitted(exc.signature, amount)
            raise
        self._log_event(f"{what}_submitted", signature=signature, amount=amount, **fields)
        if on_submitted is not None:
            await on_submitted(signature, amount)
        return signature

    async def _confirm(self, signature: str, what: str) -> ConfirmationResult:
        result = await self.ledger.wait_for_confirmation(signature, timeout=self.config.confirm_timeout_sec)
        if result.outcome is ConfirmationOutcome.TIMED_OUT:
            self._log_event(f"{what}_indeterminate", signature=signature)
            raise Indeterminate(f"{what} {signature} not confirmed in time", signature=signature)
        if result.outcome is ConfirmationOutcome.FAILED:
            self._log_event(f"{what}_failed", signature=signature, error=result.error)
            raise LedgerTransactionFailed(f"{what} {signature} failed: {result.error}", signature=signature)
        return result

    async def harvest(self, on_submitted: Optional[OnSubmitted] = None) -> HarvestReceipt:
        """
        Harvest withheld fees into keeper custody.

        The harvestable balance is always re-read from the ledger first, so a
        resumed process cannot re-harvest an accumulation window whose
        harvest already landed.

        Raises:
            NothingToHarvest: below the harvest threshold (no submission)
            Indeterminate: submitted, confirmation not observed in time
            LedgerTransactionFailed: rejected or executed with an error
        """
        available = await self.get_harvestable_balance()
        if available < self.config.harvest_threshold:
            raise NothingToHarvest(available, self.config.harvest_threshold)

        before = await self.get_keeper_token_balance()
        signature = await self._submit("harvest", [self.build_harvest_instruction()], available, on_submitted)

        result = await self._confirm(signature, "harvest")
        after = await self.get_keeper_token_balance()
        amount = after - before if after > before else available
        self._log_event("harvest_confirmed", signature=signature, amount=amount, slot=result.slot)
        return HarvestReceipt(signature=signature, amount=amount, slot=result.slot)

    async def distribute(
        self,
        allocations: Sequence[Allocation],
        exclusions: Optional[ExclusionSet] = None,
        on_submitted: Optional[OnSubmitted] = None,
    ) -> DistributionReceipt:
        """
        Pay ``allocations`` out of the keeper's reward account.

        Refuses to submit unless the exclusion set is fresh; recipients in the
        reward exclusion set are dropped before the instruction is built.
        """
        current = exclusions or self._exclusions
        if current is None:
            raise StaleExclusionSet("exclusion set has never been read")
        age = current.age(self._clock())
        if age > self.config.exclusion_max_age_sec:
            raise StaleExclusionSet(
                f"exclusion set is {age:.0f}s old (max {self.config.exclusion_max_age_sec:.0f}s)",
                age=age,
            )

        payable = [a for a in allocations if a.amount > 0 and not current.is_reward_excluded(a.recipient)]
        dropped = len(allocations) - len(payable)
        if dropped:
            self._log_event("distribution_recipients_dropped", count=dropped)
        if not payable:
            raise ValueError("no payable recipients in distribution batch")

        total = sum(a.amount for a in payable)
        signature = await self._submit(
            "distribution",
            [self.build_distribute_instruction(payable)],
            total,
            on_submitted,
            recipients=len(payable),
        )

        result = await self._confirm(signature, "distribution")
        self._log_event("distribution_confirmed", signature=signature, amount=total, recipients=len(payable))
        return DistributionReceipt(signature=signature, amount=total, recipients=len(payable), slot=result.slot)

    async def pay_owner_share(
        self,
        owner: Pubkey,
        amount: int,
        on_submitted: Optional[OnSubmitted] = None,
    ) -> OwnerShareReceipt:
        """Transfer ``amount`` of harvested tokens from keeper custody to the owner wallet."""
        if amount <= 0:
            raise ValueError("owner share must be positive")
        mint_data = await self.ledger.get_account(self.token_mint)
        if mint_data is None:
            raise ConfigValidationError(f"token mint {self.token_mint} not found on ledger")
        decimals = decode_mint_decimals(mint_data)

        signature = await self._submit(
            "owner_share",
            self.build_owner_share_instructions(owner, amount, decimals),
            amount,
            on_submitted,
            owner=str(owner),
        )
        result = await self._confirm(signature, "owner_share")
        self._log_event("owner_share_confirmed", signature=signature, amount=amount, owner=str(owner))
        return OwnerShareReceipt(signature=signature, amount=amount, owner=str(owner), slot=result.slot)

    async def manage_exclusion(
        self,
        action: ExclusionAction,
        list_kind: ExclusionListKind,
        address: Pubkey,
        authority: Optional[Keypair] = None,
    ) -> ConfirmationResult:
        """Admin operation; the keeper's own cycle never calls this."""
        signer = authority or self.keeper
        ix = self.build_manage_exclusion_instruction(action, list_kind, address, signer.pubkey())
        signature = await self.ledger.submit([ix], [signer])
        self._log_event(
            "exclusion_submitted",
            signature=signature,
            action=action.name.lower(),
            list=list_kind.name.lower(),
            address=str(address),
        )
        result = await self._confirm(signature, "exclusion")
        self._exclusions = None
        return result
