"""
FailureBackoff: consecutive-failure tracking for the keeper loop.

Handles:
- Failure streak tracking (seeded from persisted state, so it survives restarts)
- Next-tick delay: min(interval * 2**failures, max_backoff)
- The alert threshold crossing
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

log = logging.getLogger("keeper")

# 2**32 intervals is past any sane max_backoff already.
_MAX_EXPONENT = 32


@dataclass
class BackoffConfig:
    interval_sec: float = 300.0
    max_backoff_sec: float = 3600.0
    alert_threshold: int = 3


class FailureBackoff:
    """
    Exponential backoff between ticks, never a busy retry inside a tick.

    Single-task asyncio usage, no internal locks.
    """

    def __init__(
        self,
        config: BackoffConfig,
        failures: int = 0,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.config = config
        self.failures = max(0, int(failures))
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}))

    def next_delay(self) -> float:
        """Seconds to wait before the next tick."""
        if self.failures == 0:
            return self.config.interval_sec
        exponent = min(self.failures, _MAX_EXPONENT)
        return min(self.config.interval_sec * (2 ** exponent), self.config.max_backoff_sec)

    def record_failure(self, kind: str, error: str) -> bool:
        """
        Count a failed cycle. Returns True when this failure reaches the
        alert threshold (only on the crossing, not on every failure after it).
        """
        self.failures += 1
        self._log_event(
            "cycle_failure_recorded",
            kind=kind,
            err=error,
            streak=self.failures,
            next_delay_sec=self.next_delay(),
        )
        return self.failures == self.config.alert_threshold

    def record_success(self) -> int:
        """Reset the streak; returns the streak that just ended."""
        previous = self.failures
        if previous > 0:
            self._log_event("cycle_failure_reset", streak=previous)
        self.failures = 0
        return previous

    @property
    def alerting(self) -> bool:
        return self.failures >= self.config.alert_threshold

    def get_state(self) -> dict:
        return {
            "failures": self.failures,
            "alerting": self.alerting,
            "next_delay_sec": self.next_delay(),
        }
