"""
SwapAdapter: the aggregator contract used to turn harvested tokens into the
reward currency.

Quotes are single use. ``swap`` refuses a quote that was already consumed,
has outlived its TTL, or was priced too many slots ago.
"""

from __future__ import annotations

import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from keeper.errors import StaleQuote


@dataclass(frozen=True)
class SwapParams:
    input_mint: str
    output_mint: str
    amount: int
    slippage_bps: int


@dataclass(frozen=True)
class SwapQuote:
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    min_out_amount: int
    slippage_bps: int
    price_impact_pct: float
    context_slot: int
    route: Tuple[str, ...] = ()
    quoted_at: float = field(default_factory=time.time)
    quote_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def params(self) -> SwapParams:
        return SwapParams(self.input_mint, self.output_mint, self.in_amount, self.slippage_bps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quote_id": self.quote_id,
            "input_mint": self.input_mint,
            "output_mint": self.output_mint,
            "in_amount": self.in_amount,
            "out_amount": self.out_amount,
            "min_out_amount": self.min_out_amount,
            "slippage_bps": self.slippage_bps,
            "price_impact_pct": self.price_impact_pct,
            "context_slot": self.context_slot,
            "route": list(self.route),
            "quoted_at": self.quoted_at,
        }


@dataclass(frozen=True)
class SwapResult:
    signature: str
    in_amount: int
    out_amount: int
    status: str
    slot: Optional[int] = None
    quote_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature": self.signature,
            "in_amount": self.in_amount,
            "out_amount": self.out_amount,
            "status": self.status,
            "slot": self.slot,
            "quote_id": self.quote_id,
        }


class SwapAdapter(ABC):
    """Capability interface over a swap aggregator."""

    def __init__(
        self,
        quote_ttl_sec: float = 30.0,
        slot_tolerance: int = 150,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.quote_ttl_sec = quote_ttl_sec
        self.slot_tolerance = slot_tolerance
        self._clock = clock
        # quote_id -> quoted_at; kept only while the quote could still pass the TTL check
        self._consumed: Dict[str, float] = {}

    @abstractmethod
    async def quote(self, params: SwapParams) -> SwapQuote:
        """Price a swap without side effects. Raises InsufficientLiquidity when unroutable."""

    @abstractmethod
    async def swap(self, quote: SwapQuote, signer: Keypair, output_account: Optional[Pubkey] = None) -> SwapResult:
        """
        Execute ``quote`` signed by ``signer``.

        ``output_account`` is where the output lands; when given, the executed
        out amount is measured from its balance change. Without one the output
        goes to the signer (native SOL for the wrapped SOL mint).
        """

    @abstractmethod
    async def get_token_price(self, mint: str) -> Optional[float]:
        """USD price, or None when no price is available."""

    async def close(self) -> None:
        return None

    def _claim(self, quote: SwapQuote, current_slot: Optional[int]) -> None:
        """Check a quote is still usable and mark it consumed."""
        now = self._clock()
        for quote_id, quoted_at in list(self._consumed.items()):
            if now - quoted_at > self.quote_ttl_sec:
                del self._consumed[quote_id]
        if quote.quote_id in self._consumed:
            raise StaleQuote(f"quote {quote.quote_id} already consumed")
        age = now - quote.quoted_at
        if age > self.quote_ttl_sec:
            raise StaleQuote(f"quote is {age:.1f}s old (ttl {self.quote_ttl_sec:.0f}s)", age=age)
        if current_slot is not None and current_slot - quote.context_slot > self.slot_tolerance:
            raise StaleQuote(
                f"quote priced at slot {quote.context_slot}, ledger at {current_slot}",
                drift=current_slot - quote.context_slot,
            )
        self._consumed[quote.quote_id] = quote.quoted_at
