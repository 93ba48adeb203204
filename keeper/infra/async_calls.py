"""
Timeout and retry wrappers for network calls.

Every ledger and aggregator call goes through ``call_with_timeout`` so a
hung request surfaces as that call's failure instead of stalling a cycle.
"""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from keeper.errors import ConnectivityError

T = TypeVar("T")


async def call_with_timeout(fn: Callable[[], Awaitable[T]], timeout: float, what: str = "call") -> T:
    """Await ``fn()`` with a per-call timeout. Timeouts become ConnectivityError."""
    try:
        return await asyncio.wait_for(fn(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise ConnectivityError(f"{what} timed out after {timeout:.1f}s", call=what) from exc


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    retries: int = 2,
    base_delay: float = 0.2,
    backoff: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = (ConnectivityError,),
) -> T:
    """
    Retry ``fn`` on the given exception types with jittered exponential backoff.

    Delay before attempt n (n >= 1) is ``base_delay * backoff ** (n - 1)``.
    The last exception propagates.
    """
    delay = base_delay
    for attempt in range(retries + 1):
        try:
            return await fn()
        except retry_on:
            if attempt >= retries:
                raise
            await asyncio.sleep(delay + random.uniform(0, delay * 0.5))
            delay *= backoff
    raise AssertionError("unreachable")
