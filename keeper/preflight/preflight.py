"""
PreflightChecker: the gate in front of the keeper loop.

Checks run in a fixed order and each one either passes, fails with a reason,
or is skipped because a check it depends on failed:

    connectivity
    credentials     keypair loads, matches the configured keeper wallet,
                    no private key material in the deployment state
    program         vault program account exists and is executable  (needs connectivity)
    configuration   mint carries the fee extension, tax config is initialized  (needs connectivity)
    balance         keeper holds the minimum operating balance  (needs connectivity, credentials)

The resulting artifact is signed with the keeper key (when credentials are
valid) and written as JSON for operators and deployment tooling.
"""

from __future__ import annotations

import json
import logging
import shutil
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature

from keeper.config.config_store import ConfigStore, parse_pubkey
from keeper.core.json_utils import dumps_canonical, dumps_pretty, loads
from keeper.errors import KeeperError
from keeper.ledger.client import LedgerClient
from keeper.ledger.derivation import VaultAddresses
from keeper.vault.layouts import decode_tax_config, decode_transfer_fee_config

log = logging.getLogger("keeper")

ARTIFACT_NAME = "keeper-preflight.json"

CONNECTIVITY = "connectivity"
CREDENTIALS = "credentials"
PROGRAM = "program"
CONFIGURATION = "configuration"
BALANCE = "balance"

CHECK_ORDER: Tuple[str, ...] = (CONNECTIVITY, CREDENTIALS, PROGRAM, CONFIGURATION, BALANCE)

DEPENDENCIES: Dict[str, Tuple[str, ...]] = {
    CONNECTIVITY: (),
    CREDENTIALS: (),
    PROGRAM: (CONNECTIVITY,),
    CONFIGURATION: (CONNECTIVITY,),
    BALANCE: (CONNECTIVITY, CREDENTIALS),
}


class CheckStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class CheckResult:
    name: str
    status: CheckStatus
    detail: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "status": self.status.value, "detail": self.detail}


@dataclass
class PreflightArtifact:
    checks: List[CheckResult]
    overall: CheckStatus
    timestamp: float
    network: str = ""
    signer: Optional[str] = None
    signature: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.overall is CheckStatus.PASS

    def check(self, name: str) -> Optional[CheckResult]:
        return next((c for c in self.checks if c.name == name), None)

    def payload(self) -> Dict[str, Any]:
        """Everything except the signature; this is what gets signed."""
        return {
            "checks": [c.to_dict() for c in self.checks],
            "overall": self.overall.value,
            "timestamp": self.timestamp,
            "network": self.network,
            "signer": self.signer,
        }

    def sign(self, keypair: Keypair) -> None:
        self.signer = str(keypair.pubkey())
        self.signature = str(keypair.sign_message(dumps_canonical(self.payload())))

    def verify(self) -> bool:
        if not self.signer or not self.signature:
            return False
        sig = Signature.from_string(self.signature)
        return sig.verify(Pubkey.from_string(self.signer), dumps_canonical(self.payload()))

    def to_dict(self) -> Dict[str, Any]:
        return {**self.payload(), "signature": self.signature}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreflightArtifact":
        return cls(
            checks=[CheckResult(c["name"], CheckStatus(c["status"]), c.get("detail", "")) for c in data["checks"]],
            overall=CheckStatus(data["overall"]),
            timestamp=float(data["timestamp"]),
            network=data.get("network", ""),
            signer=data.get("signer"),
            signature=data.get("signature"),
        )

    @classmethod
    def read(cls, path: str | Path) -> "PreflightArtifact":
        return cls.from_dict(loads(Path(path).read_bytes()))


@dataclass
class PreflightConfig:
    """Configuration for PreflightChecker."""
    keypair_name: str = "keeper"
    min_operating_balance: int = 50_000_000
    verification_dir: str = "verification"
    shared_verification_dir: Optional[str] = None
    network: str = "devnet"
    log_event_callback: Optional[Callable[..., None]] = None

    @classmethod
    def from_settings(cls, settings) -> "PreflightConfig":
        return cls(
            keypair_name=settings.keeper_keypair_name,
            min_operating_balance=settings.min_operating_balance_lamports,
            verification_dir=settings.verification_dir,
            shared_verification_dir=settings.shared_verification_dir,
            network=settings.network,
        )


class PreflightChecker:
    def __init__(
        self,
        ledger: LedgerClient,
        store: ConfigStore,
        config: Optional[PreflightConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger
        self.store = store
        self.config = config or PreflightConfig()
        self._clock = clock
        self._keypair: Optional[Keypair] = None
        self._log_event = self.config.log_event_callback or self._default_log
        self.artifact_path = Path(self.config.verification_dir) / ARTIFACT_NAME

    def _default_log(self, event: str, **kwargs: Any) -> None:
        payload = {"event": event, "component": "preflight", **kwargs}
        log.info(json.dumps(payload, default=str))

    async def run(self) -> PreflightArtifact:
        """Run every check, write the artifact and return it. Never raises for a failed check."""
        self._keypair = None
        checks: Dict[str, Callable[[], Awaitable[str]]] = {
            CONNECTIVITY: self._check_connectivity,
            CREDENTIALS: self._check_credentials,
            PROGRAM: self._check_program,
            CONFIGURATION: self._check_configuration,
            BALANCE: self._check_balance,
        }
        results: Dict[str, CheckResult] = {}
        for name in CHECK_ORDER:
            failed_deps = [d for d in DEPENDENCIES[name] if results[d].status is not CheckStatus.PASS]
            if failed_deps:
                result = CheckResult(name, CheckStatus.SKIPPED, f"depends on {', '.join(failed_deps)}")
            else:
                try:
                    result = CheckResult(name, CheckStatus.PASS, await checks[name]())
                except (KeeperError, ValueError) as exc:
                    result = CheckResult(name, CheckStatus.FAIL, str(exc))
            results[name] = result
            self._log_event("preflight_check", check=name, status=result.status.value, detail=result.detail)

        ordered = [results[n] for n in CHECK_ORDER]
        overall = CheckStatus.PASS if all(r.status is CheckStatus.PASS for r in ordered) else CheckStatus.FAIL
        artifact = PreflightArtifact(
            checks=ordered,
            overall=overall,
            timestamp=self._clock(),
            network=self.config.network,
        )
        if self._keypair is not None:
            artifact.sign(self._keypair)
        self.write_artifact(artifact)
        self._log_event("preflight_complete", overall=overall.value, path=str(self.artifact_path))
        return artifact

    def write_artifact(self, artifact: PreflightArtifact) -> Path:
        self.artifact_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.artifact_path.with_suffix(".json.tmp")
        tmp.write_text(dumps_pretty(artifact.to_dict()))
        tmp.replace(self.artifact_path)
        if self.config.shared_verification_dir:
            self.copy_artifact(self.config.shared_verification_dir)
        return self.artifact_path

    def copy_artifact(self, dest_dir: str | Path) -> Path:
        if not self.artifact_path.exists():
            raise FileNotFoundError(f"no preflight artifact at {self.artifact_path}")
        dest = Path(dest_dir)
        dest.mkdir(parents=True, exist_ok=True)
        target = dest / ARTIFACT_NAME
        shutil.copy2(self.artifact_path, target)
        return target

    # ------------------------------------------------------------------
    # Checks; each returns a detail string or raises
    # ------------------------------------------------------------------

    async def _check_connectivity(self) -> str:
        slot = await self.ledger.get_slot()
        return f"ledger reachable at slot {slot}"

    async def _check_credentials(self) -> str:
        keypair = self.store.load_keypair(self.config.keypair_name)
        expected = self.store.keeper_wallet
        if expected is not None and keypair.pubkey() != expected:
            raise KeeperError(f"keypair {keypair.pubkey()} is not the configured keeper wallet {expected}")
        leaked = self.store.secret_fields()
        if leaked:
            raise KeeperError(f"private key material in deployment state: {', '.join(leaked)}")
        self._keypair = keypair
        return f"keeper {keypair.pubkey()}"

    async def _check_program(self) -> str:
        program_id = self.store.vault_program_id
        executable = await self.ledger.is_executable(program_id)
        if executable is None:
            raise KeeperError(f"vault program {program_id} not found")
        if not executable:
            raise KeeperError(f"vault program {program_id} is not executable")
        return f"vault program {program_id} deployed"

    async def _check_configuration(self) -> str:
        mint = self.store.token_mint
        reward = self.store.get("reward_mint")
        if reward:
            parse_pubkey(reward, "reward_mint")
        mint_data = await self.ledger.get_account(mint)
        if mint_data is None:
            raise KeeperError(f"token mint {mint} not found")
        fee_config = decode_transfer_fee_config(mint_data)

        addresses = VaultAddresses.for_program(self.store.vault_program_id)
        tax_data = await self.ledger.get_account(addresses.tax_config)
        if tax_data is None:
            raise KeeperError(f"tax config {addresses.tax_config} not found; vault not initialized")
        tax_config = decode_tax_config(tax_data)
        if not tax_config.initialized:
            raise KeeperError("tax config exists but is not initialized")
        if tax_config.mint != mint:
            raise KeeperError(f"tax config is for mint {tax_config.mint}, expected {mint}")
        for field_name, on_chain in (
            ("owner_wallet", tax_config.owner_wallet),
            ("treasury_wallet", tax_config.treasury_wallet),
            ("smart_dial_program_id", tax_config.smart_dial_program),
        ):
            recorded = self.store.optional_pubkey(field_name)
            if recorded is not None and recorded != on_chain:
                raise KeeperError(f"deployment state {field_name} {recorded} does not match tax config {on_chain}")
        return f"mint fee {fee_config.newer.basis_points} bps, vault initialized"

    async def _check_balance(self) -> str:
        assert self._keypair is not None
        balance = await self.ledger.get_balance(self._keypair.pubkey())
        if balance < self.config.min_operating_balance:
            raise KeeperError(
                f"keeper balance {balance} below minimum operating balance {self.config.min_operating_balance}"
            )
        return f"balance {balance} lamports"
