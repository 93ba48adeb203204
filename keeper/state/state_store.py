"""
Runtime state persistence.

``StateStore`` does blocking file IO (write to a temp file, then
``os.replace``). ``AtomicStateStore`` wraps it for the event loop: IO runs in
the default executor and access is serialized with an ``asyncio.Lock``.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Dict, Union

from keeper.core.json_utils import dumps_pretty, loads

log = logging.getLogger("keeper")


class StateStore:
    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self.tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Dict[str, Any]:
        """Last saved state, or {} when nothing was saved or the file is unreadable."""
        if not self.path.exists():
            return {}
        try:
            data = loads(self.path.read_bytes())
        except (OSError, ValueError) as exc:
            log.error(f"state_load_error:{exc}")
            return {}
        return data if isinstance(data, dict) else {}

    def save(self, data: Dict[str, Any]) -> None:
        # A failed save is re-raised: the caller must not believe a step is
        # durable when it is not.
        try:
            with open(self.tmp, "w", encoding="utf-8") as fh:
                fh.write(dumps_pretty(data))
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(self.tmp, self.path)
        except OSError as exc:
            log.error(f"state_save_error:{exc}")
            raise


class AtomicStateStore:
    def __init__(self, path: Union[str, Path]) -> None:
        self._store = StateStore(path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._store.path

    async def load(self) -> Dict[str, Any]:
        async with self._lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._store.load)

    async def save(self, data: Dict[str, Any]) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, lambda: self._store.save(data))
