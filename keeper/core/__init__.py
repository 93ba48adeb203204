"""
Core utilities shared by every keeper component.
"""

from keeper.core.json_utils import dumps, dumps_bytes, dumps_canonical, dumps_pretty, loads

__all__ = [
    "dumps",
    "dumps_bytes",
    "dumps_canonical",
    "dumps_pretty",
    "loads",
]
