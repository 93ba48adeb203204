"""
Tests for SolanaLedgerClient's send path over a scripted RPC client.
"""

from types import SimpleNamespace

import httpx
import pytest
from solana.rpc.core import RPCException
from solders.hash import Hash
from solders.keypair import Keypair

from keeper.errors import Indeterminate, LedgerTransactionFailed
from keeper.ledger.client import SolanaLedgerClient


class ScriptedRpc:
    """Just enough of AsyncClient for submit(); ``send_error`` is raised by send_transaction."""

    def __init__(self, send_error=None):
        self.send_error = send_error
        self.sent = []

    async def get_latest_blockhash(self, commitment=None):
        return SimpleNamespace(value=SimpleNamespace(blockhash=Hash.default()))

    async def send_transaction(self, tx, opts=None):
        self.sent.append(tx)
        if self.send_error is not None:
            raise self.send_error
        return SimpleNamespace(value=tx.signatures[0])


def make_client(rpc):
    return SolanaLedgerClient("http://localhost:8899", rpc_timeout=1.0, client=rpc)


class TestSend:
    @pytest.mark.asyncio
    async def test_signature_returned(self):
        rpc = ScriptedRpc()
        signature = await make_client(rpc).submit([], [Keypair()])
        assert signature == str(rpc.sent[0].signatures[0])

    @pytest.mark.asyncio
    async def test_lost_reply_is_indeterminate_with_signature(self):
        rpc = ScriptedRpc(send_error=httpx.ReadError("connection reset"))
        with pytest.raises(Indeterminate) as exc:
            await make_client(rpc).submit([], [Keypair()])
        assert exc.value.signature == str(rpc.sent[0].signatures[0])

    @pytest.mark.asyncio
    async def test_rejected_by_simulation_is_a_failure(self):
        rpc = ScriptedRpc(send_error=RPCException("Transaction simulation failed"))
        with pytest.raises(LedgerTransactionFailed) as exc:
            await make_client(rpc).submit([], [Keypair()])
        assert exc.value.signature == str(rpc.sent[0].signatures[0])

    @pytest.mark.asyncio
    async def test_close_leaves_shared_client_open(self):
        rpc = ScriptedRpc()
        await make_client(rpc).close()
        assert rpc.sent == []
