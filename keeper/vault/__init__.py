"""
Vault package - instruction building, account decoding and reward allocation.
"""

from keeper.vault.allocation import Allocation, AllocationPlan, ExclusionSet, compute_allocations
from keeper.vault.gateway import (
    DistributionReceipt,
    ExclusionAction,
    ExclusionListKind,
    HarvestReceipt,
    VaultGateway,
    VaultGatewayConfig,
)

__all__ = [
    "Allocation",
    "AllocationPlan",
    "ExclusionSet",
    "compute_allocations",
    "DistributionReceipt",
    "ExclusionAction",
    "ExclusionListKind",
    "HarvestReceipt",
    "VaultGateway",
    "VaultGatewayConfig",
]
