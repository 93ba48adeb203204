"""
Infrastructure package - logging and async call helpers.
"""

from keeper.infra.logging_cfg import build_logger, event_logger, log_event
from keeper.infra.async_calls import call_with_timeout, retry_async

__all__ = [
    "build_logger",
    "event_logger",
    "log_event",
    "call_with_timeout",
    "retry_async",
]
