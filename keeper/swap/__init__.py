"""
Swap package - aggregator contract and the Jupiter implementation.
"""

from keeper.swap.adapter import SwapAdapter, SwapParams, SwapQuote, SwapResult
from keeper.swap.jupiter import JupiterSwapAdapter

__all__ = ["SwapAdapter", "SwapParams", "SwapQuote", "SwapResult", "JupiterSwapAdapter"]
