"""
Value types shared by ledger clients and their callers.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ConfirmationOutcome(Enum):
    """Three-way result of waiting on a submitted transaction."""
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class ConfirmationResult:
    signature: str
    outcome: ConfirmationOutcome
    slot: Optional[int] = None
    error: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.outcome is ConfirmationOutcome.CONFIRMED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature": self.signature,
            "outcome": self.outcome.value,
            "slot": self.slot,
            "error": self.error,
        }


@dataclass(frozen=True)
class AccountSnapshot:
    """Raw account as returned by the ledger."""
    address: str
    data: bytes
    lamports: int
    owner: str
    executable: bool = False


class Commitment(str, Enum):
    PROCESSED = "processed"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"

    def satisfied_by(self, observed: Optional[str]) -> bool:
        """True if an observed confirmation level meets this commitment."""
        if observed is None:
            return False
        order = ("processed", "confirmed", "finalized")
        try:
            return order.index(observed) >= order.index(self.value)
        except ValueError:
            return False
