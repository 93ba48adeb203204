"""
Keeper factory: wires Settings + ConfigStore into ready-to-run components.

Usage:
    from keeper.factory import create_keeper

    keeper = await create_keeper(settings, store)
    await keeper.orchestrator.run_forever()
    await keeper.close()

Tests pass their own ``ledger`` / ``swap_adapter`` to get the same wiring
over doubles.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from keeper.config.config import Settings
from keeper.config.config_store import ConfigStore, parse_pubkey
from keeper.errors import ConfigValidationError
from keeper.infra.logging_cfg import event_logger
from keeper.ledger.client import LedgerClient, SolanaLedgerClient
from keeper.ledger.derivation import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID
from keeper.monitoring.alerting import AlertConfig, AlertManager
from keeper.monitoring.metrics import HealthChecker, KeeperMetrics
from keeper.orchestrator.keeper_orchestrator import KeeperOrchestrator, OrchestratorConfig
from keeper.preflight.preflight import PreflightChecker, PreflightConfig
from keeper.state.state_store import AtomicStateStore
from keeper.swap.adapter import SwapAdapter
from keeper.swap.jupiter import JupiterSwapAdapter
from keeper.vault.gateway import VaultGateway, VaultGatewayConfig

log = logging.getLogger("keeper")


@dataclass
class KeeperComponents:
    settings: Settings
    store: ConfigStore
    ledger: LedgerClient
    swap_adapter: SwapAdapter
    gateway: VaultGateway
    preflight: PreflightChecker
    orchestrator: KeeperOrchestrator
    alerts: AlertManager
    metrics: KeeperMetrics
    health: HealthChecker

    async def close(self) -> None:
        await self.alerts.close()
        await self.swap_adapter.close()
        await self.ledger.close()


def resolve_reward_mint(settings: Settings, store: ConfigStore) -> Pubkey:
    """KEEPER_REWARD_MINT wins over the deployment state's reward_mint."""
    raw = settings.reward_mint or store.get("reward_mint")
    if not raw:
        raise ConfigValidationError("no reward mint configured (KEEPER_REWARD_MINT or deployment state reward_mint)")
    return parse_pubkey(raw, "reward_mint")


async def resolve_token_program(ledger: LedgerClient, mint: Pubkey) -> Pubkey:
    """Token program owning ``mint``; classic SPL when the mint cannot be read."""
    info = await ledger.get_account_info(mint)
    if info is not None and info.owner == str(TOKEN_2022_PROGRAM_ID):
        return TOKEN_2022_PROGRAM_ID
    return TOKEN_PROGRAM_ID


def load_keeper_keypair(settings: Settings, store: ConfigStore) -> Keypair:
    return store.load_keypair(settings.keeper_keypair_name)


async def create_keeper(
    settings: Settings,
    store: ConfigStore,
    keypair: Optional[Keypair] = None,
    ledger: Optional[LedgerClient] = None,
    swap_adapter: Optional[SwapAdapter] = None,
    alerts: Optional[AlertManager] = None,
    metrics: Optional[KeeperMetrics] = None,
    logger: Optional[logging.Logger] = None,
) -> KeeperComponents:
    """
    Build every keeper component.

    Raises:
        ConfigValidationError: deployment state lacks program id, mint or reward mint
        CredentialError: the keeper keypair cannot be loaded
    """
    logger = logger or log
    keypair = keypair or load_keeper_keypair(settings, store)
    ledger = ledger or SolanaLedgerClient(
        settings.rpc_url,
        commitment=settings.commitment,
        rpc_timeout=settings.rpc_timeout_sec,
        priority_fee_micro_lamports=settings.priority_fee_micro_lamports,
    )
    swap_adapter = swap_adapter or JupiterSwapAdapter(
        ledger,
        base_url=settings.jupiter_base_url,
        price_url=settings.jupiter_price_url,
        timeout=settings.http_timeout_sec,
        quote_ttl_sec=settings.quote_ttl_sec,
        slot_tolerance=settings.quote_slot_tolerance,
        confirm_timeout_sec=settings.confirm_timeout_sec,
        compute_unit_price_micro_lamports=settings.priority_fee_micro_lamports,
    )

    program_id = store.vault_program_id
    token_mint = store.token_mint
    reward_mint = resolve_reward_mint(settings, store)
    reward_program = await resolve_token_program(ledger, reward_mint)

    gateway_cfg = VaultGatewayConfig.from_settings(settings, reward_token_program=reward_program)
    gateway_cfg.log_event_callback = event_logger(logger, "vault")
    gateway = VaultGateway(ledger, program_id, token_mint, reward_mint, keypair, gateway_cfg)

    preflight_cfg = PreflightConfig.from_settings(settings)
    preflight_cfg.log_event_callback = event_logger(logger, "preflight")
    preflight = PreflightChecker(ledger, store, preflight_cfg)

    alerts = alerts or AlertManager(AlertConfig.from_settings(settings, vault=str(program_id)))
    metrics = metrics or KeeperMetrics()
    health = HealthChecker()
    health.set_component_health("config", True, "configuration validated")

    owner = store.owner_wallet
    orch_cfg = OrchestratorConfig.from_settings(settings, owner_wallet=str(owner) if owner else None)
    orch_cfg.log_event_callback = event_logger(logger, "orchestrator")
    orchestrator = KeeperOrchestrator(
        gateway=gateway,
        swap_adapter=swap_adapter,
        preflight=preflight,
        state_store=AtomicStateStore(settings.runtime_state_path),
        config=orch_cfg,
        alerts=alerts,
        metrics=metrics,
        health=health,
    )
    return KeeperComponents(
        settings=settings,
        store=store,
        ledger=ledger,
        swap_adapter=swap_adapter,
        gateway=gateway,
        preflight=preflight,
        orchestrator=orchestrator,
        alerts=alerts,
        metrics=metrics,
        health=health,
    )
