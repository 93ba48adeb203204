"""
Pytest configuration and fixtures.

Every test runs with KEEPER_* variables removed from the environment so
Settings.load() sees defaults only.
"""

import dataclasses
import os
import time
from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry

from fakes import SimulatedSwapAdapter, VaultWorld
from keeper.config.config import ENV_PREFIX, Settings
from keeper.monitoring.alerting import AlertConfig, AlertManager, AlertSeverity
from keeper.monitoring.metrics import HealthChecker, KeeperMetrics
from keeper.orchestrator.keeper_orchestrator import KeeperOrchestrator, OrchestratorConfig
from keeper.preflight.preflight import PreflightChecker, PreflightConfig
from keeper.state.state_store import AtomicStateStore


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith(ENV_PREFIX):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return dataclasses.replace(
        Settings.load(),
        deployment_state_path=str(tmp_path / "deployment-state.json"),
        keypair_dir=str(tmp_path / "keypairs"),
        runtime_state_path=str(tmp_path / "state" / "keeper-runtime.json"),
        verification_dir=str(tmp_path / "verification"),
        confirm_timeout_sec=0.2,
    )


@pytest.fixture
def alerts() -> AlertManager:
    return AlertManager(AlertConfig(webhook_url=None, min_severity=AlertSeverity.INFO))


@pytest.fixture
def metrics() -> KeeperMetrics:
    return KeeperMetrics(registry=CollectorRegistry())


@pytest.fixture
def build_keeper(tmp_path: Path):
    """Factory for an orchestrator wired to a VaultWorld."""

    def _build(
        world: VaultWorld,
        swap=None,
        alerts=None,
        metrics=None,
        clock=time.time,
        state_path=None,
        log_event_callback=None,
        **overrides,
    ) -> KeeperOrchestrator:
        store = world.write_deployment_state(tmp_path)
        preflight = PreflightChecker(
            world.ledger,
            store,
            PreflightConfig(verification_dir=str(tmp_path / "verification")),
            clock=clock,
        )
        options = dict(
            tick_interval_sec=0.01,
            max_backoff_sec=0.5,
            max_price_impact_pct=2.0,
            min_hold_amount=100_000,
            log_event_callback=log_event_callback,
        )
        options.update(overrides)
        return KeeperOrchestrator(
            gateway=world.gateway(),
            swap_adapter=swap or SimulatedSwapAdapter(world.ledger),
            preflight=preflight,
            state_store=AtomicStateStore(state_path or tmp_path / "state" / "keeper-runtime.json"),
            config=OrchestratorConfig(**options),
            alerts=alerts,
            metrics=metrics,
            health=HealthChecker(),
            clock=clock,
        )

    return _build
