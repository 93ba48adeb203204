"""
LedgerClient: the narrow contract the keeper uses to talk to the chain.

Submission returns as soon as the ledger accepts the transaction. Finality
is observed separately through ``wait_for_confirmation``, which always
returns one of CONFIRMED / FAILED / TIMED_OUT and never a boolean.
"""

from __future__ import annotations

import asyncio
import logging
import struct
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed, Finalized, Processed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.compute_budget import set_compute_unit_price
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from keeper.core.json_utils import dumps
from keeper.errors import ConnectivityError, Indeterminate, LedgerTransactionFailed
from keeper.infra.async_calls import call_with_timeout
from keeper.ledger.derivation import Seed, derive_address
from keeper.ledger.types import AccountSnapshot, Commitment, ConfirmationOutcome, ConfirmationResult

log = logging.getLogger("keeper")

T = TypeVar("T")

TOKEN_ACCOUNT_AMOUNT_OFFSET = 64

_COMMITMENTS = {
    "processed": Processed,
    "confirmed": Confirmed,
    "finalized": Finalized,
}

def _confirmation_level(status: Any) -> Optional[str]:
    observed = status.confirmation_status
    if observed is None:
        return None
    if observed == TransactionConfirmationStatus.Finalized:
        return "finalized"
    if observed == TransactionConfirmationStatus.Confirmed:
        return "confirmed"
    return "processed"


class LedgerClient(ABC):
    """Capability interface over a remote ledger."""

    commitment: Commitment = Commitment.CONFIRMED

    @abstractmethod
    async def submit(self, instructions: Sequence[Instruction], signers: Sequence[Keypair]) -> str:
        """
        Sign and send. Returns the transaction signature before finality.

        Raises:
            LedgerTransactionFailed: the ledger rejected the transaction
                before broadcasting it
            Indeterminate: the transaction may have been broadcast but the
                reply was lost; ``signature`` is set so the caller can
                reconcile it
        """

    @abstractmethod
    async def submit_raw(self, transaction: VersionedTransaction) -> str:
        """Send an already signed transaction."""

    @abstractmethod
    async def get_signature_status(self, signature: str) -> Optional[ConfirmationResult]:
        """
        Current status of ``signature``.

        Returns CONFIRMED once the configured commitment is reached, FAILED if
        the ledger executed it with an error, or None if the ledger does not
        (yet) know it at the required commitment.
        """

    @abstractmethod
    async def get_account_info(self, address: Pubkey) -> Optional[AccountSnapshot]:
        """Raw account, or None when it does not exist."""

    @abstractmethod
    async def get_slot(self) -> int:
        ...

    @abstractmethod
    async def get_balance(self, address: Pubkey) -> int:
        """Native balance in lamports."""

    async def close(self) -> None:
        return None

    def derive_address(self, seeds: Sequence[Seed], program_id: Pubkey) -> Pubkey:
        return derive_address(seeds, program_id)[0]

    async def get_account(self, address: Pubkey) -> Optional[bytes]:
        info = await self.get_account_info(address)
        return None if info is None else info.data

    async def is_executable(self, address: Pubkey) -> Optional[bool]:
        info = await self.get_account_info(address)
        return None if info is None else info.executable

    async def get_token_balance(self, token_account: Pubkey) -> int:
        """Token amount held by an SPL / Token-2022 account. Missing accounts hold 0."""
        data = await self.get_account(token_account)
        if data is None:
            return 0
        if len(data) < TOKEN_ACCOUNT_AMOUNT_OFFSET + 8:
            raise ValueError(f"{token_account} is not a token account ({len(data)} bytes)")
        return struct.unpack_from("<Q", data, TOKEN_ACCOUNT_AMOUNT_OFFSET)[0]

    async def wait_for_confirmation(
        self,
        signature: str,
        timeout: float,
        poll_interval: float = 0.5,
    ) -> ConfirmationResult:
        """
        Poll until the signature is confirmed, failed, or ``timeout`` elapses.

        Transport errors while polling are retried until the deadline; they
        never turn into FAILED.
        """
        deadline = time.monotonic() + timeout
        while True:
            try:
                status = await self.get_signature_status(signature)
            except ConnectivityError as exc:
                log.warning(dumps({"event": "rpc_retry", "call": "get_signature_status", "error": str(exc)}))
                status = None
            if status is not None:
                return status
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return ConfirmationResult(signature=signature, outcome=ConfirmationOutcome.TIMED_OUT)
            await asyncio.sleep(min(poll_interval, remaining))


class SolanaLedgerClient(LedgerClient):
    """LedgerClient over Solana JSON-RPC (solana-py AsyncClient + solders)."""

    def __init__(
        self,
        rpc_url: str,
        commitment: str = "confirmed",
        rpc_timeout: float = 15.0,
        priority_fee_micro_lamports: int = 0,
        client: Optional[AsyncClient] = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.commitment = Commitment(commitment)
        self._rpc_commitment = _COMMITMENTS[self.commitment.value]
        self.rpc_timeout = rpc_timeout
        self.priority_fee_micro_lamports = priority_fee_micro_lamports
        self._client = client or AsyncClient(rpc_url, commitment=self._rpc_commitment, timeout=rpc_timeout)
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.close()

    async def _rpc(self, what: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await call_with_timeout(fn, self.rpc_timeout, what)
        except (SolanaRpcException, httpx.HTTPError, OSError) as exc:
            raise ConnectivityError(f"{what} failed: {exc}", call=what) from exc

    async def submit(self, instructions: Sequence[Instruction], signers: Sequence[Keypair]) -> str:
        if not signers:
            raise ValueError("at least one signer (the fee payer) is required")
        ixs = list(instructions)
        if self.priority_fee_micro_lamports > 0:
            ixs.insert(0, set_compute_unit_price(self.priority_fee_micro_lamports))

        blockhash_resp = await self._rpc(
            "get_latest_blockhash",
            lambda: self._client.get_latest_blockhash(commitment=self._rpc_commitment),
        )
        message = MessageV0.try_compile(
            payer=signers[0].pubkey(),
            instructions=ixs,
            address_lookup_table_accounts=[],
            recent_blockhash=blockhash_resp.value.blockhash,
        )
        tx = VersionedTransaction(message, list(signers))
        return await self._send(tx)

    async def submit_raw(self, transaction: VersionedTransaction) -> str:
        return await self._send(transaction)

    async def _send(self, tx: VersionedTransaction) -> str:
        opts = TxOpts(skip_preflight=False, preflight_commitment=self._rpc_commitment)
        # The first signature is the transaction id, known before sending.
        signature = str(tx.signatures[0])
        try:
            resp = await self._rpc("send_transaction", lambda: self._client.send_transaction(tx, opts=opts))
        except RPCException as exc:
            # Preflight simulation rejected the transaction; nothing was broadcast.
            raise LedgerTransactionFailed(f"simulation failed: {exc}", signature=signature) from exc
        except ConnectivityError as exc:
            log.warning(dumps({"event": "tx_send_unacknowledged", "signature": signature, "error": str(exc)}))
            raise Indeterminate(f"send of {signature} not acknowledged: {exc}", signature=signature) from exc
        if str(resp.value) != signature:
            log.warning(dumps({"event": "tx_signature_mismatch", "expected": signature, "returned": str(resp.value)}))
            signature = str(resp.value)
        log.debug(dumps({"event": "tx_submitted", "signature": signature}))
        return signature

    async def get_signature_status(self, signature: str) -> Optional[ConfirmationResult]:
        sig = Signature.from_string(signature)
        resp = await self._rpc(
            "get_signature_statuses",
            lambda: self._client.get_signature_statuses([sig], search_transaction_history=True),
        )
        status = resp.value[0] if resp.value else None
        if status is None:
            return None
        if status.err is not None:
            return ConfirmationResult(
                signature=signature,
                outcome=ConfirmationOutcome.FAILED,
                slot=status.slot,
                error=str(status.err),
            )
        level = _confirmation_level(status)
        if self.commitment.satisfied_by(level):
            return ConfirmationResult(signature=signature, outcome=ConfirmationOutcome.CONFIRMED, slot=status.slot)
        return None

    async def get_account_info(self, address: Pubkey) -> Optional[AccountSnapshot]:
        resp = await self._rpc(
            "get_account_info",
            lambda: self._client.get_account_info(address, commitment=self._rpc_commitment),
        )
        value = resp.value
        if value is None:
            return None
        return AccountSnapshot(
            address=str(address),
            data=bytes(value.data),
            lamports=value.lamports,
            owner=str(value.owner),
            executable=value.executable,
        )

    async def get_slot(self) -> int:
        resp = await self._rpc("get_slot", lambda: self._client.get_slot(commitment=self._rpc_commitment))
        return resp.value

    async def get_balance(self, address: Pubkey) -> int:
        resp = await self._rpc(
            "get_balance",
            lambda: self._client.get_balance(address, commitment=self._rpc_commitment),
        )
        return resp.value
