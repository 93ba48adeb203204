"""
Fast JSON utilities backed by orjson.

Usage:
    from keeper.core.json_utils import dumps, loads

    log.info(dumps({"event": "harvest_confirmed", "amount": 1000}))
"""

from __future__ import annotations

from typing import Any

import orjson


def dumps(obj: Any) -> str:
    """Fast JSON encode to string."""
    return orjson.dumps(obj, default=str).decode("utf-8")


def dumps_bytes(obj: Any) -> bytes:
    """Fast JSON encode to bytes."""
    return orjson.dumps(obj, default=str)


def dumps_pretty(obj: Any) -> str:
    """Indented, key-sorted encoding for files meant to be read by people."""
    return orjson.dumps(obj, default=str, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS).decode("utf-8")


def dumps_canonical(obj: Any) -> bytes:
    """Compact, key-sorted encoding. Stable across runs, suitable for signing."""
    return orjson.dumps(obj, default=str, option=orjson.OPT_SORT_KEYS)


def loads(s: str | bytes) -> Any:
    """Fast JSON decode."""
    return orjson.loads(s)
