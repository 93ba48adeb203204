"""
Configuration package.

Environment settings, their validation, and the persisted deployment state.
"""

from keeper.config.config import Settings
from keeper.config.config_store import ConfigStore
from keeper.config.config_validator import ConfigValidator, validate_and_log

__all__ = [
    "Settings",
    "ConfigStore",
    "ConfigValidator",
    "validate_and_log",
]
