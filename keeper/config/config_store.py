"""
ConfigStore: persisted deployment state and signing credentials.

The deployment state is a flat JSON document (program ids, mints,
initialization flags, signatures of past critical transactions). It is
loaded once, mutated only through ``update`` and written to disk before
``update`` returns. Readers always see a complete snapshot.

Keypairs are stored next to it as ``<name>-keypair.json`` files holding the
64 byte secret as a JSON integer array.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from keeper.core.json_utils import dumps, dumps_pretty, loads
from keeper.errors import ConfigValidationError, CredentialError, KeypairExistsError
from keeper.ledger.types import ConfirmationResult

log = logging.getLogger("keeper")

REQUIRED_FIELDS = ("vault_program_id", "token_mint")

ADDRESS_FIELDS = (
    "vault_program_id",
    "smart_dial_program_id",
    "token_mint",
    "reward_mint",
    "keeper_wallet",
    "owner_wallet",
    "treasury_wallet",
    "pool_id",
)

SECRET_KEY_HINTS = ("secret", "private", "seed_phrase", "mnemonic")


def parse_pubkey(value: Any, field_name: str) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    if not isinstance(value, str) or not value:
        raise ConfigValidationError(f"{field_name} must be a base58 address", field=field_name)
    try:
        return Pubkey.from_string(value)
    except ValueError as exc:
        raise ConfigValidationError(f"{field_name} is not a valid address: {value!r}", field=field_name) from exc


def _looks_like_secret(key: str, value: Any) -> bool:
    lowered = key.lower()
    if any(hint in lowered for hint in SECRET_KEY_HINTS):
        return True
    if isinstance(value, list) and len(value) == 64 and all(isinstance(b, int) and 0 <= b <= 255 for b in value):
        return True
    if isinstance(value, str) and 80 <= len(value) <= 90:
        try:
            return len(base58.b58decode(value)) == 64
        except ValueError:
            return False
    return False


class ConfigStore:
    """
    Thread-safe holder of the deployment state blob.

    Copy-on-write: ``update`` builds a new dict, persists it, then swaps the
    reference under a lock, so concurrent readers get either the old or the
    new snapshot and never a partial one.
    """

    def __init__(self, path: str | Path, keypair_dir: str | Path = "keypairs") -> None:
        self.path = Path(path)
        self.tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        self.keypair_dir = Path(keypair_dir)
        self._lock = threading.Lock()
        self._state: Dict[str, Any] = {}
        self._loaded = False

    # ------------------------------------------------------------------
    # Deployment state
    # ------------------------------------------------------------------

    def load(self) -> Mapping[str, Any]:
        """Read and validate the deployment state file."""
        if not self.path.exists():
            raise ConfigValidationError(f"deployment state not found: {self.path}")
        try:
            data = loads(self.path.read_bytes())
        except ValueError as exc:
            raise ConfigValidationError(f"deployment state is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigValidationError("deployment state must be a JSON object")

        missing = [f for f in REQUIRED_FIELDS if not data.get(f)]
        if missing:
            raise ConfigValidationError(f"deployment state missing required fields: {', '.join(missing)}", missing=missing)
        self._validate_addresses(data)

        with self._lock:
            self._state = data
            self._loaded = True
        log.info(dumps({"event": "deployment_state_loaded", "path": str(self.path), "fields": sorted(data)}))
        return self.snapshot()

    @staticmethod
    def _validate_addresses(data: Mapping[str, Any]) -> None:
        for name in ADDRESS_FIELDS:
            value = data.get(name)
            if value not in (None, ""):
                parse_pubkey(value, name)

    def snapshot(self) -> Mapping[str, Any]:
        """Read-only view of the current state."""
        with self._lock:
            return MappingProxyType(dict(self._state))

    def get(self, name: str, default: Any = None) -> Any:
        with self._lock:
            return self._state.get(name, default)

    def update(self, partial: Mapping[str, Any], confirmed: bool = False) -> Mapping[str, Any]:
        """
        Merge ``partial`` into the state and persist before returning.

        Signature fields (``*_signature``) are only accepted with
        ``confirmed=True``; use ``record_signature`` for those.
        """
        if not partial:
            return self.snapshot()
        sig_fields = [k for k in partial if k.endswith("_signature")]
        if sig_fields and not confirmed:
            raise ValueError(f"refusing to record unconfirmed signatures: {', '.join(sig_fields)}")
        self._validate_addresses(partial)

        with self._lock:
            new_state = {**self._state, **partial}
            self._persist(new_state)
            self._state = new_state
        log.info(dumps({"event": "deployment_state_updated", "fields": sorted(partial)}))
        return self.snapshot()

    def record_signature(self, field_name: str, result: ConfirmationResult) -> Mapping[str, Any]:
        if not field_name.endswith("_signature"):
            raise ValueError(f"not a signature field: {field_name}")
        if not result.confirmed:
            raise ValueError(f"{field_name}: transaction {result.signature} is {result.outcome.value}, not confirmed")
        return self.update({field_name: result.signature}, confirmed=True)

    def _persist(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.tmp.write_text(dumps_pretty(data))
        os.replace(self.tmp, self.path)

    # ------------------------------------------------------------------
    # Typed getters
    # ------------------------------------------------------------------

    def _require(self, name: str) -> Any:
        value = self.get(name)
        if value in (None, ""):
            raise ConfigValidationError(f"deployment state has no '{name}'", field=name)
        return value

    @property
    def vault_program_id(self) -> Pubkey:
        return parse_pubkey(self._require("vault_program_id"), "vault_program_id")

    @property
    def token_mint(self) -> Pubkey:
        return parse_pubkey(self._require("token_mint"), "token_mint")

    @property
    def reward_mint(self) -> Pubkey:
        return parse_pubkey(self._require("reward_mint"), "reward_mint")

    @property
    def keeper_wallet(self) -> Optional[Pubkey]:
        value = self.get("keeper_wallet")
        return parse_pubkey(value, "keeper_wallet") if value else None

    def optional_pubkey(self, name: str) -> Optional[Pubkey]:
        value = self.get(name)
        return parse_pubkey(value, name) if value else None

    @property
    def owner_wallet(self) -> Optional[Pubkey]:
        return self.optional_pubkey("owner_wallet")

    @property
    def vault_initialized(self) -> bool:
        return bool(self.get("vault_initialized", False))

    def secret_fields(self) -> List[str]:
        """Names of fields that look like private key material."""
        with self._lock:
            return sorted(k for k, v in self._state.items() if _looks_like_secret(k, v))

    # ------------------------------------------------------------------
    # Keypairs
    # ------------------------------------------------------------------

    def keypair_path(self, name: str) -> Path:
        if not name or "/" in name or name.startswith("."):
            raise CredentialError(f"invalid keypair name: {name!r}")
        return self.keypair_dir / f"{name}-keypair.json"

    def load_keypair(self, name: str) -> Keypair:
        path = self.keypair_path(name)
        if not path.exists():
            raise CredentialError(f"keypair '{name}' not found at {path}")
        try:
            raw = json.loads(path.read_text())
            return Keypair.from_bytes(bytes(raw))
        except (ValueError, TypeError) as exc:
            raise CredentialError(f"keypair '{name}' is unreadable: {exc}") from exc

    def save_keypair(self, name: str, keypair: Keypair, overwrite: bool = False) -> Path:
        path = self.keypair_path(name)
        if path.exists() and not overwrite:
            raise KeypairExistsError(f"keypair '{name}' already exists at {path}")
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(list(bytes(keypair))))
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)
        log.info(dumps({"event": "keypair_saved", "name": name, "pubkey": str(keypair.pubkey())}))
        return path
