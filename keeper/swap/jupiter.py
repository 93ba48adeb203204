"""
Jupiter aggregator adapter (quote API v6 + price API) over httpx.
"""

from __future__ import annotations

import base64
import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from keeper.core.json_utils import dumps
from keeper.errors import (
    ConnectivityError,
    Indeterminate,
    InsufficientLiquidity,
    LedgerTransactionFailed,
    SlippageExceeded,
)
from keeper.infra.async_calls import retry_async
from keeper.ledger.client import LedgerClient
from keeper.ledger.types import ConfirmationOutcome
from keeper.swap.adapter import SwapAdapter, SwapParams, SwapQuote, SwapResult

log = logging.getLogger("keeper")

# Jupiter program error SlippageToleranceExceeded (6001)
SLIPPAGE_ERROR_MARKERS = ("6001", "0x1771")
NO_ROUTE_MARKERS = ("NO_ROUTES_FOUND", "COULD_NOT_FIND_ANY_ROUTE", "TOKEN_NOT_TRADABLE")

QUOTE_REQUIRED_FIELDS = ("inputMint", "outputMint", "inAmount", "outAmount", "otherAmountThreshold")


def _is_slippage_error(message: Optional[str]) -> bool:
    return bool(message) and any(marker in message for marker in SLIPPAGE_ERROR_MARKERS)


class JupiterSwapAdapter(SwapAdapter):
    def __init__(
        self,
        ledger: LedgerClient,
        base_url: str = "https://quote-api.jup.ag/v6",
        price_url: str = "https://api.jup.ag/price/v2",
        timeout: float = 10.0,
        quote_ttl_sec: float = 30.0,
        slot_tolerance: int = 150,
        confirm_timeout_sec: float = 60.0,
        compute_unit_price_micro_lamports: Optional[int] = None,
        retries: int = 2,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(quote_ttl_sec=quote_ttl_sec, slot_tolerance=slot_tolerance, clock=clock)
        self.ledger = ledger
        self.retries = retries
        self.base_url = base_url.rstrip("/")
        self.price_url = price_url
        self.confirm_timeout_sec = confirm_timeout_sec
        self.compute_unit_price_micro_lamports = compute_unit_price_micro_lamports
        # A shared client passed in is not closed by close().
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise ConnectivityError(f"jupiter {method} {url} failed: {exc}") from exc
        if resp.status_code == 429 or resp.status_code >= 500:
            raise ConnectivityError(f"jupiter {method} {url} returned HTTP {resp.status_code}", status=resp.status_code)
        return resp

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def quote(self, params: SwapParams) -> SwapQuote:
        if params.amount <= 0:
            raise ValueError("swap amount must be positive")
        query = {
            "inputMint": params.input_mint,
            "outputMint": params.output_mint,
            "amount": str(params.amount),
            "slippageBps": str(params.slippage_bps),
            "swapMode": "ExactIn",
        }
        # Quotes have no side effects, so transport failures are retried.
        resp = await retry_async(
            lambda: self._request("GET", f"{self.base_url}/quote", params=query),
            retries=self.retries,
        )
        if resp.status_code >= 400:
            body = resp.text
            if resp.status_code == 400 or any(m in body for m in NO_ROUTE_MARKERS):
                raise InsufficientLiquidity(f"no route for {params.amount} {params.input_mint} -> {params.output_mint}")
            raise ConnectivityError(f"jupiter quote returned HTTP {resp.status_code}: {body[:200]}")

        data = resp.json()
        missing = [f for f in QUOTE_REQUIRED_FIELDS if f not in data]
        if missing:
            raise ConnectivityError(f"jupiter quote response missing {', '.join(missing)}")
        if int(data["outAmount"]) <= 0 or not data.get("routePlan", [None]):
            raise InsufficientLiquidity("jupiter returned an empty route")
        return self._parse_quote(data)

    def _parse_quote(self, data: Dict[str, Any]) -> SwapQuote:
        route = tuple(
            str(step.get("swapInfo", {}).get("label", "?"))
            for step in data.get("routePlan", [])
        )
        # priceImpactPct is a fraction ("0.0123" means 1.23%)
        impact_pct = float(data.get("priceImpactPct") or 0.0) * 100.0
        return SwapQuote(
            input_mint=data["inputMint"],
            output_mint=data["outputMint"],
            in_amount=int(data["inAmount"]),
            out_amount=int(data["outAmount"]),
            min_out_amount=int(data["otherAmountThreshold"]),
            slippage_bps=int(data.get("slippageBps", 0)),
            price_impact_pct=abs(impact_pct),
            context_slot=int(data.get("contextSlot") or 0),
            route=route,
            quoted_at=self._clock(),
            raw=data,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def swap(self, quote: SwapQuote, signer: Keypair, output_account: Optional[Pubkey] = None) -> SwapResult:
        current_slot = await self.ledger.get_slot()
        self._claim(quote, current_slot if quote.context_slot else None)

        # Re-price before signing anything; a worse fresh price means the
        # execution would land under the bound.
        fresh = await self.quote(quote.params)
        if fresh.out_amount < quote.min_out_amount:
            log.warning(dumps({
                "event": "swap_slippage_precheck_failed",
                "quoted_out": quote.out_amount,
                "fresh_out": fresh.out_amount,
                "min_out": quote.min_out_amount,
            }))
            raise SlippageExceeded(
                f"fresh out amount {fresh.out_amount} below minimum {quote.min_out_amount}",
                fresh_out=fresh.out_amount,
                min_out=quote.min_out_amount,
            )

        tx = await self._build_transaction(quote, signer)
        before = await self.ledger.get_token_balance(output_account) if output_account else None

        try:
            signature = await self.ledger.submit_raw(tx)
        except LedgerTransactionFailed as exc:
            if _is_slippage_error(str(exc)):
                raise SlippageExceeded(str(exc)) from exc
            raise

        result = await self.ledger.wait_for_confirmation(signature, timeout=self.confirm_timeout_sec)
        if result.outcome is ConfirmationOutcome.TIMED_OUT:
            raise Indeterminate(f"swap {signature} not confirmed in time", signature=signature)
        if result.outcome is ConfirmationOutcome.FAILED:
            if _is_slippage_error(result.error):
                raise SlippageExceeded(f"swap {signature} exceeded slippage on chain", signature=signature)
            raise LedgerTransactionFailed(f"swap {signature} failed: {result.error}", signature=signature)

        out_amount = quote.out_amount
        if output_account is not None and before is not None:
            after = await self.ledger.get_token_balance(output_account)
            if after > before:
                out_amount = after - before

        log.info(dumps({
            "event": "swap_confirmed",
            "signature": signature,
            "in_amount": quote.in_amount,
            "out_amount": out_amount,
            "route": list(quote.route),
        }))
        return SwapResult(
            signature=signature,
            in_amount=quote.in_amount,
            out_amount=out_amount,
            status=result.outcome.value,
            slot=result.slot,
            quote_id=quote.quote_id,
        )

    async def _build_transaction(self, quote: SwapQuote, signer: Keypair) -> VersionedTransaction:
        body: Dict[str, Any] = {
            "quoteResponse": quote.raw,
            "userPublicKey": str(signer.pubkey()),
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
        }
        # Same compute unit price as the keeper's own transactions; Jupiter
        # picks one only when none is configured.
        if self.compute_unit_price_micro_lamports is not None:
            body["computeUnitPriceMicroLamports"] = self.compute_unit_price_micro_lamports
        else:
            body["prioritizationFeeLamports"] = "auto"
        resp = await self._request("POST", f"{self.base_url}/swap", json=body)
        if resp.status_code >= 400:
            raise ConnectivityError(f"jupiter swap build returned HTTP {resp.status_code}: {resp.text[:200]}")
        payload = resp.json()
        encoded = payload.get("swapTransaction")
        if not encoded:
            raise ConnectivityError("jupiter swap response has no swapTransaction")
        unsigned = VersionedTransaction.from_bytes(base64.b64decode(encoded))
        return VersionedTransaction(unsigned.message, [signer])

    # ------------------------------------------------------------------
    # Prices
    # ------------------------------------------------------------------

    async def get_token_price(self, mint: str) -> Optional[float]:
        resp = await retry_async(
            lambda: self._request("GET", self.price_url, params={"ids": mint}),
            retries=self.retries,
        )
        if resp.status_code >= 400:
            return None
        entry = (resp.json().get("data") or {}).get(mint)
        if not entry or entry.get("price") in (None, ""):
            return None
        price = float(entry["price"])
        return price if price > 0 else None
