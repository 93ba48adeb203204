"""
Exclusion sets and exclusion-aware reward allocation.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence

from keeper.vault.layouts import HolderRecord, TransferFee


@dataclass(frozen=True)
class ExclusionSet:
    """Reward exclusions and tax exemptions as read from the vault."""
    reward_excluded: FrozenSet[str] = frozenset()
    tax_exempt: FrozenSet[str] = frozenset()
    fetched_at: float = field(default_factory=time.time)

    @classmethod
    def from_addresses(
        cls,
        reward_excluded: Iterable[object],
        tax_exempt: Iterable[object],
        fetched_at: Optional[float] = None,
    ) -> "ExclusionSet":
        return cls(
            reward_excluded=frozenset(str(a) for a in reward_excluded),
            tax_exempt=frozenset(str(a) for a in tax_exempt),
            fetched_at=time.time() if fetched_at is None else fetched_at,
        )

    def is_reward_excluded(self, address: object) -> bool:
        return str(address) in self.reward_excluded

    def is_tax_exempt(self, address: object) -> bool:
        return str(address) in self.tax_exempt

    def age(self, now: Optional[float] = None) -> float:
        return (time.time() if now is None else now) - self.fetched_at

    def is_stale(self, max_age_sec: float, now: Optional[float] = None) -> bool:
        return self.age(now) > max_age_sec

    def transfer_fee(self, sender: object, recipient: object, amount: int, fee: TransferFee) -> int:
        """Tax charged on a transfer; zero when either side is exempt."""
        if self.is_tax_exempt(sender) or self.is_tax_exempt(recipient):
            return 0
        return fee.calculate(amount)

    def to_dict(self) -> Dict[str, object]:
        return {
            "reward_excluded": sorted(self.reward_excluded),
            "tax_exempt": sorted(self.tax_exempt),
            "fetched_at": self.fetched_at,
        }


@dataclass(frozen=True)
class Allocation:
    recipient: str
    amount: int


@dataclass(frozen=True)
class AllocationPlan:
    allocations: List[Allocation]
    eligible_balance: int
    skipped_excluded: int = 0
    skipped_below_minimum: int = 0

    @property
    def total(self) -> int:
        return sum(a.amount for a in self.allocations)

    def batches(self, size: int) -> List[List[Allocation]]:
        if size < 1:
            raise ValueError("batch size must be >= 1")
        return [self.allocations[i:i + size] for i in range(0, len(self.allocations), size)]


def compute_allocations(
    total: int,
    holders: Sequence[HolderRecord],
    exclusions: ExclusionSet,
    min_hold_amount: int,
) -> AllocationPlan:
    """
    Split ``total`` across eligible holders in proportion to their balance.

    Holders that are reward-excluded or hold less than ``min_hold_amount``
    get nothing. Shares are floored, so ``plan.total <= total``; the
    remainder stays with the keeper and is carried into the next cycle.
    A holder listed twice counts once, with its first balance.
    """
    seen = set()
    eligible: List[HolderRecord] = []
    excluded = below = 0
    for holder in holders:
        key = str(holder.address)
        if key in seen:
            continue
        seen.add(key)
        if exclusions.is_reward_excluded(key):
            excluded += 1
            continue
        if holder.balance < min_hold_amount or holder.balance <= 0:
            below += 1
            continue
        eligible.append(holder)

    eligible_balance = sum(h.balance for h in eligible)
    if total <= 0 or eligible_balance == 0:
        return AllocationPlan([], eligible_balance, excluded, below)

    allocations = []
    for holder in eligible:
        amount = total * holder.balance // eligible_balance
        if amount > 0:
            allocations.append(Allocation(recipient=str(holder.address), amount=amount))
    return AllocationPlan(allocations, eligible_balance, excluded, below)
