"""
RuntimeCycleState: what the keeper must remember across ticks and restarts.

Amount fields are the resume contract:
    owner_share_due      harvested into keeper custody, owed to the owner wallet
    unswapped_amount     harvested into keeper custody, not yet swapped
    undistributed_amount reward currency held by the keeper, not yet paid out
    distribution_plan    allocations computed for undistributed_amount and not
                         yet confirmed paid, in submission order
    pending_*            submitted, confirmation never observed
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional

PENDING_FIELDS = (
    "pending_harvest",
    "pending_owner_share",
    "pending_upkeep",
    "pending_swap",
    "pending_distribution",
)


@dataclass
class PendingSubmission:
    signature: str
    amount: int
    since: float
    expected_out: int = 0
    recipients: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["PendingSubmission"]:
        if not data or not data.get("signature"):
            return None
        return cls(
            signature=str(data["signature"]),
            amount=int(data.get("amount", 0)),
            since=float(data.get("since", 0.0)),
            expected_out=int(data.get("expected_out", 0)),
            recipients=int(data.get("recipients", 0)),
        )


def _plan_entries(raw: Any) -> List[Dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    plan = []
    for entry in raw:
        if isinstance(entry, dict) and entry.get("recipient") and int(entry.get("amount", 0)) > 0:
            plan.append({"recipient": str(entry["recipient"]), "amount": int(entry["amount"])})
    return plan


@dataclass
class RuntimeCycleState:
    last_success_ts: Optional[float] = None
    last_harvested_amount: int = 0
    last_swap_quote: Optional[Dict[str, Any]] = None
    last_swap_result: Optional[Dict[str, Any]] = None
    last_distribution_signature: Optional[str] = None
    consecutive_failures: int = 0
    owner_share_due: int = 0
    unswapped_amount: int = 0
    undistributed_amount: int = 0
    distribution_plan: List[Dict[str, Any]] = field(default_factory=list)
    pending_harvest: Optional[PendingSubmission] = None
    pending_owner_share: Optional[PendingSubmission] = None
    pending_upkeep: Optional[PendingSubmission] = None
    pending_swap: Optional[PendingSubmission] = None
    pending_distribution: Optional[PendingSubmission] = None
    last_failure_kind: Optional[str] = None
    alerting: bool = False
    cycle_count: int = 0
    last_state: str = "IDLE"
    stopped_at: Optional[float] = None
    distributed_total: int = 0
    owner_paid_total: int = 0

    def has_pending(self) -> bool:
        return any(getattr(self, name) is not None for name in PENDING_FIELDS)

    def has_carry_over(self, min_distribution: int = 1) -> bool:
        """True when carried amounts are enough to act on without a new harvest."""
        return (
            self.owner_share_due > 0
            or self.unswapped_amount > 0
            or bool(self.distribution_plan)
            or self.undistributed_amount >= max(1, min_distribution)
        )

    @property
    def plan_total(self) -> int:
        return sum(entry["amount"] for entry in self.distribution_plan)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in PENDING_FIELDS:
            pending = getattr(self, name)
            data[name] = pending.to_dict() if pending else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuntimeCycleState":
        """Build from persisted data; unknown keys are ignored, missing keys default."""
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        for name in PENDING_FIELDS:
            kwargs[name] = PendingSubmission.from_dict(data.get(name))
        kwargs["distribution_plan"] = _plan_entries(data.get("distribution_plan"))
        for name in ("last_harvested_amount", "consecutive_failures", "owner_share_due", "unswapped_amount",
                     "undistributed_amount", "cycle_count", "distributed_total", "owner_paid_total"):
            if name in kwargs:
                kwargs[name] = int(kwargs[name] or 0)
        return cls(**kwargs)
