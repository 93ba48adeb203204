"""
State package - runtime cycle state and its persistence.
"""

from keeper.state.cycle_state import PendingSubmission, RuntimeCycleState
from keeper.state.state_store import AtomicStateStore, StateStore

__all__ = ["PendingSubmission", "RuntimeCycleState", "AtomicStateStore", "StateStore"]
