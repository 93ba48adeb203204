"""
Tax vault keeper: harvests withheld transfer fees, swaps them into the reward
currency and distributes the proceeds to eligible holders.
"""

__version__ = "0.3.0"
