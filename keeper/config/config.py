"""
Environment-driven keeper settings with validation.

All tunables live here. Values come from the process environment (and a
``.env`` file when present) under the ``KEEPER_`` prefix.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from keeper.core.json_utils import dumps
from keeper.errors import ConfigValidationError

load_dotenv()

log = logging.getLogger("keeper")

ENV_PREFIX = "KEEPER_"

VALID_COMMITMENTS = ("processed", "confirmed", "finalized")
VALID_NETWORKS = ("localnet", "devnet", "testnet", "mainnet-beta")


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None or val == "":
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigValidationError(f"{key} must be an integer, got {raw!r}") from exc


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigValidationError(f"{key} must be a number, got {raw!r}") from exc


def _str_env(key: str, default: Optional[str]) -> Optional[str]:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


@dataclass(frozen=True)
class Settings:
    # Network
    network: str
    rpc_url: str
    commitment: str
    rpc_timeout_sec: float
    confirm_timeout_sec: float
    priority_fee_micro_lamports: int
    # Token economics
    token_name: str
    token_symbol: str
    token_decimals: int
    total_supply: int
    transfer_fee_bps: int
    maximum_fee: int
    # Vault thresholds (base units of the taxed token)
    min_hold_amount: int
    harvest_threshold: int
    # Swap
    reward_mint: Optional[str]
    jupiter_base_url: str
    jupiter_price_url: str
    http_timeout_sec: float
    slippage_bps: int
    max_price_impact_pct: float
    quote_ttl_sec: float
    quote_slot_tolerance: int
    # Cycle
    tick_interval_sec: float
    max_backoff_sec: float
    alert_failure_threshold: int
    exclusion_max_age_sec: float
    distribution_batch_size: int
    min_distribution_amount: int
    owner_share_bps: int
    sol_upkeep_below_lamports: int
    sol_upkeep_share_bps: int
    pending_tx_expiry_sec: float
    registry_max_chunks: int
    # Preflight
    min_operating_balance_lamports: int
    verification_dir: str
    shared_verification_dir: Optional[str]
    # Files
    deployment_state_path: str
    keypair_dir: str
    keeper_keypair_name: str
    runtime_state_path: str
    # Observability
    log_level: str
    log_file: Optional[str]
    metrics_port: int
    alert_webhook_url: Optional[str]
    alert_webhook_type: str  # generic, slack, discord, pagerduty
    alert_enabled: bool

    def dump(self) -> Dict[str, Any]:
        """Settings as a dict for sanity logs. Contains no secrets."""
        out = {f.name: getattr(self, f.name) for f in fields(self)}
        if out.get("alert_webhook_url"):
            out["alert_webhook_url"] = "***"
        return out

    @classmethod
    def load(cls) -> "Settings":
        p = ENV_PREFIX
        cfg = cls(
            network=_str_env(f"{p}NETWORK", "devnet"),
            rpc_url=_str_env(f"{p}RPC_URL", "https://api.devnet.solana.com"),
            commitment=_str_env(f"{p}COMMITMENT", "confirmed"),
            rpc_timeout_sec=_float_env(f"{p}RPC_TIMEOUT_SEC", 15.0),
            confirm_timeout_sec=_float_env(f"{p}CONFIRM_TIMEOUT_SEC", 60.0),
            priority_fee_micro_lamports=_int_env(f"{p}PRIORITY_FEE_MICRO_LAMPORTS", 5_000),
            token_name=_str_env(f"{p}TOKEN_NAME", "MIKO"),
            token_symbol=_str_env(f"{p}TOKEN_SYMBOL", "MIKO"),
            token_decimals=_int_env(f"{p}TOKEN_DECIMALS", 9),
            total_supply=_int_env(f"{p}TOKEN_TOTAL_SUPPLY", 1_000_000_000),
            transfer_fee_bps=_int_env(f"{p}TRANSFER_FEE_BPS", 500),
            maximum_fee=_int_env(f"{p}MAXIMUM_FEE", 2**64 - 1),
            min_hold_amount=_int_env(f"{p}MIN_HOLD_AMOUNT", 100_000),
            harvest_threshold=_int_env(f"{p}HARVEST_THRESHOLD", 500_000),
            reward_mint=_str_env(f"{p}REWARD_MINT", None),
            jupiter_base_url=_str_env(f"{p}JUPITER_BASE_URL", "https://quote-api.jup.ag/v6"),
            jupiter_price_url=_str_env(f"{p}JUPITER_PRICE_URL", "https://api.jup.ag/price/v2"),
            http_timeout_sec=_float_env(f"{p}HTTP_TIMEOUT_SEC", 10.0),
            slippage_bps=_int_env(f"{p}SLIPPAGE_BPS", 100),
            max_price_impact_pct=_float_env(f"{p}MAX_PRICE_IMPACT_PCT", 5.0),
            quote_ttl_sec=_float_env(f"{p}QUOTE_TTL_SEC", 30.0),
            quote_slot_tolerance=_int_env(f"{p}QUOTE_SLOT_TOLERANCE", 150),
            tick_interval_sec=_float_env(f"{p}TICK_INTERVAL_SEC", 300.0),
            max_backoff_sec=_float_env(f"{p}MAX_BACKOFF_SEC", 3600.0),
            alert_failure_threshold=_int_env(f"{p}ALERT_FAILURE_THRESHOLD", 3),
            exclusion_max_age_sec=_float_env(f"{p}EXCLUSION_MAX_AGE_SEC", 120.0),
            distribution_batch_size=_int_env(f"{p}DISTRIBUTION_BATCH_SIZE", 20),
            min_distribution_amount=_int_env(f"{p}MIN_DISTRIBUTION_AMOUNT", 1_000),
            owner_share_bps=_int_env(f"{p}OWNER_SHARE_BPS", 0),
            sol_upkeep_below_lamports=_int_env(f"{p}SOL_UPKEEP_BELOW_LAMPORTS", 100_000_000),
            sol_upkeep_share_bps=_int_env(f"{p}SOL_UPKEEP_SHARE_BPS", 2_000),
            pending_tx_expiry_sec=_float_env(f"{p}PENDING_TX_EXPIRY_SEC", 120.0),
            registry_max_chunks=_int_env(f"{p}REGISTRY_MAX_CHUNKS", 16),
            min_operating_balance_lamports=_int_env(f"{p}MIN_OPERATING_BALANCE_LAMPORTS", 50_000_000),
            verification_dir=_str_env(f"{p}VERIFICATION_DIR", "verification"),
            shared_verification_dir=_str_env(f"{p}SHARED_VERIFICATION_DIR", None),
            deployment_state_path=_str_env(f"{p}DEPLOYMENT_STATE", "config/deployment-state.json"),
            keypair_dir=_str_env(f"{p}KEYPAIR_DIR", "keypairs"),
            keeper_keypair_name=_str_env(f"{p}KEYPAIR_NAME", "keeper"),
            runtime_state_path=_str_env(f"{p}RUNTIME_STATE", "state/keeper-runtime.json"),
            log_level=_str_env(f"{p}LOG_LEVEL", "INFO").upper(),
            log_file=_str_env(f"{p}LOG_FILE", None),
            metrics_port=_int_env(f"{p}METRICS_PORT", 9108),
            alert_webhook_url=_str_env(f"{p}ALERT_WEBHOOK_URL", None),
            alert_webhook_type=_str_env(f"{p}ALERT_WEBHOOK_TYPE", "generic"),
            alert_enabled=env_bool(f"{p}ALERT_ENABLED", True),
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    def _validate(self) -> None:
        if self.network not in VALID_NETWORKS:
            raise ConfigValidationError(f"{ENV_PREFIX}NETWORK must be one of {VALID_NETWORKS}")
        if not self.rpc_url.startswith(("http://", "https://")):
            raise ConfigValidationError(f"{ENV_PREFIX}RPC_URL must be an http(s) URL")
        if self.commitment not in VALID_COMMITMENTS:
            raise ConfigValidationError(f"{ENV_PREFIX}COMMITMENT must be one of {VALID_COMMITMENTS}")
        if not 0 <= self.transfer_fee_bps <= 10_000:
            raise ConfigValidationError(f"{ENV_PREFIX}TRANSFER_FEE_BPS must be within 0..10000")
        if not 0 < self.slippage_bps <= 10_000:
            raise ConfigValidationError(f"{ENV_PREFIX}SLIPPAGE_BPS must be within 1..10000")
        if self.harvest_threshold <= 0:
            raise ConfigValidationError(f"{ENV_PREFIX}HARVEST_THRESHOLD must be > 0")
        if self.min_hold_amount < 0:
            raise ConfigValidationError(f"{ENV_PREFIX}MIN_HOLD_AMOUNT must be >= 0")
        if self.tick_interval_sec <= 0:
            raise ConfigValidationError(f"{ENV_PREFIX}TICK_INTERVAL_SEC must be > 0")
        if self.max_backoff_sec < self.tick_interval_sec:
            raise ConfigValidationError(f"{ENV_PREFIX}MAX_BACKOFF_SEC must be >= {ENV_PREFIX}TICK_INTERVAL_SEC")
        if self.alert_failure_threshold < 1:
            raise ConfigValidationError(f"{ENV_PREFIX}ALERT_FAILURE_THRESHOLD must be >= 1")
        if self.distribution_batch_size < 1:
            raise ConfigValidationError(f"{ENV_PREFIX}DISTRIBUTION_BATCH_SIZE must be >= 1")
        if self.min_distribution_amount < 0:
            raise ConfigValidationError(f"{ENV_PREFIX}MIN_DISTRIBUTION_AMOUNT must be >= 0")
        if not 0 <= self.owner_share_bps <= 10_000:
            raise ConfigValidationError(f"{ENV_PREFIX}OWNER_SHARE_BPS must be within 0..10000")
        if not 0 <= self.sol_upkeep_share_bps <= 10_000:
            raise ConfigValidationError(f"{ENV_PREFIX}SOL_UPKEEP_SHARE_BPS must be within 0..10000")
        if self.sol_upkeep_below_lamports < 0 or self.min_operating_balance_lamports < 0:
            raise ConfigValidationError("lamport thresholds must be >= 0")
        if self.rpc_timeout_sec <= 0 or self.confirm_timeout_sec <= 0:
            raise ConfigValidationError("RPC and confirmation timeouts must be > 0")
        if self.quote_ttl_sec <= 0:
            raise ConfigValidationError(f"{ENV_PREFIX}QUOTE_TTL_SEC must be > 0")
        if not 1 <= self.registry_max_chunks <= 256:
            raise ConfigValidationError(f"{ENV_PREFIX}REGISTRY_MAX_CHUNKS must be within 1..256")


def _sanity_check(cfg: Settings) -> None:
    log.info(dumps({"event": "settings_loaded", **cfg.dump()}))
    if cfg.network == "mainnet-beta" and "devnet" in cfg.rpc_url:
        log.warning(dumps({"event": "settings_network_mismatch", "network": cfg.network, "rpc_url": cfg.rpc_url}))
    if 0 < cfg.sol_upkeep_below_lamports <= cfg.min_operating_balance_lamports:
        # The balance guard stops cycles before upkeep could ever top the keeper up.
        log.warning(dumps({
            "event": "settings_upkeep_below_guard",
            "sol_upkeep_below_lamports": cfg.sol_upkeep_below_lamports,
            "min_operating_balance_lamports": cfg.min_operating_balance_lamports,
        }))
