"""
Orchestrator package - the keeper cycle state machine and its backoff policy.
"""

from keeper.orchestrator.backoff import BackoffConfig, FailureBackoff
from keeper.orchestrator.keeper_orchestrator import (
    CycleResult,
    KeeperOrchestrator,
    KeeperState,
    OrchestratorConfig,
)

__all__ = [
    "BackoffConfig",
    "FailureBackoff",
    "CycleResult",
    "KeeperOrchestrator",
    "KeeperState",
    "OrchestratorConfig",
]
