"""
KeeperOrchestrator: timer-driven harvest -> quote -> swap -> distribute loop.

States:
    IDLE -> PREFLIGHTING -> RUNNING
    RUNNING -> HARVESTING -> QUOTING -> SWAPPING -> DISTRIBUTING -> RUNNING
    any -> STOPPING -> STOPPED   (the in-flight cycle is drained first)
    any -> FAULTED               (configuration or credential error, terminal)

Each harvest is split: owner_share_bps of it is paid to the owner wallet in
the taxed token, the rest is the holders' share. While the keeper's SOL
balance is under sol_upkeep_below_lamports, sol_upkeep_share_bps of the
holders' share is sold for SOL before the reward swap.

The orchestrator owns RuntimeCycleState and persists it after every step
that moved funds, so a restarted process resumes where the last one left
off instead of repeating work:

- a submitted transaction whose confirmation was never observed (including
  one whose send was never acknowledged) is recorded as pending and
  reconciled against the ledger on the next tick before anything new is
  submitted
- the harvestable balance is always read from the ledger, never from state
- carried amounts are capped at what the keeper actually holds
- a distribution plan is persisted and resumed batch by batch, so a batch
  that landed is never paid again

A failed step never crashes the loop. It is classified, counted, logged and
delays the next tick (exponential backoff bounded by max_backoff_sec).
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from solders.pubkey import Pubkey

from keeper.config.config_store import parse_pubkey
from keeper.errors import (
    ConfigValidationError,
    CredentialError,
    Indeterminate,
    InsufficientLiquidity,
    KeeperError,
    LedgerTransactionFailed,
    LowOperatingBalance,
    NothingToHarvest,
    PreflightFailure,
    PriceImpactExceeded,
    SlippageExceeded,
    StaleQuote,
    failure_kind,
)
from keeper.ledger.derivation import NATIVE_MINT
from keeper.ledger.types import ConfirmationOutcome
from keeper.monitoring.alerting import AlertManager
from keeper.monitoring.metrics import HealthChecker, KeeperMetrics
from keeper.orchestrator.backoff import BackoffConfig, FailureBackoff
from keeper.preflight.preflight import CheckStatus, PreflightArtifact, PreflightChecker
from keeper.state.cycle_state import PendingSubmission, RuntimeCycleState
from keeper.state.state_store import AtomicStateStore
from keeper.swap.adapter import SwapAdapter, SwapParams, SwapQuote
from keeper.vault.allocation import Allocation, compute_allocations
from keeper.vault.gateway import VaultGateway

log = logging.getLogger("keeper")

FATAL_ERRORS = (ConfigValidationError, CredentialError)

RECONCILE_ORDER = ("harvest", "owner_share", "upkeep", "swap", "distribution")


class KeeperState(str, Enum):
    IDLE = "IDLE"
    PREFLIGHTING = "PREFLIGHTING"
    RUNNING = "RUNNING"
    HARVESTING = "HARVESTING"
    QUOTING = "QUOTING"
    SWAPPING = "SWAPPING"
    DISTRIBUTING = "DISTRIBUTING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    FAULTED = "FAULTED"


CYCLE_STATES = (
    KeeperState.HARVESTING,
    KeeperState.QUOTING,
    KeeperState.SWAPPING,
    KeeperState.DISTRIBUTING,
)


@dataclass
class CycleResult:
    """Result of a single keeper cycle."""
    success: bool
    skipped: bool = False
    reason: Optional[str] = None
    harvested: int = 0
    owner_paid: int = 0
    upkeep_in: int = 0
    upkeep_out: int = 0
    swapped_in: int = 0
    swapped_out: int = 0
    distributed: int = 0
    recipients: int = 0
    failure_kind: Optional[str] = None
    error: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def moved_funds(self) -> bool:
        return any((self.harvested, self.owner_paid, self.upkeep_in, self.swapped_in, self.distributed))


@dataclass
class OrchestratorConfig:
    """Configuration for KeeperOrchestrator."""
    tick_interval_sec: float = 300.0
    max_backoff_sec: float = 3600.0
    alert_failure_threshold: int = 3
    slippage_bps: int = 100
    max_price_impact_pct: float = 5.0
    min_hold_amount: int = 100_000
    distribution_batch_size: int = 20
    pending_tx_expiry_sec: float = 120.0
    min_distribution_amount: int = 1_000
    owner_share_bps: int = 0
    owner_wallet: Optional[str] = None  # falls back to the tax config's owner
    min_operating_balance: int = 50_000_000
    sol_upkeep_below_lamports: int = 100_000_000
    sol_upkeep_share_bps: int = 2_000
    log_event_callback: Optional[Callable[..., None]] = None

    @classmethod
    def from_settings(cls, settings, owner_wallet: Optional[str] = None) -> "OrchestratorConfig":
        return cls(
            tick_interval_sec=settings.tick_interval_sec,
            max_backoff_sec=settings.max_backoff_sec,
            alert_failure_threshold=settings.alert_failure_threshold,
            slippage_bps=settings.slippage_bps,
            max_price_impact_pct=settings.max_price_impact_pct,
            min_hold_amount=settings.min_hold_amount,
            distribution_batch_size=settings.distribution_batch_size,
            pending_tx_expiry_sec=settings.pending_tx_expiry_sec,
            min_distribution_amount=settings.min_distribution_amount,
            owner_share_bps=settings.owner_share_bps,
            owner_wallet=owner_wallet,
            min_operating_balance=settings.min_operating_balance_lamports,
            sol_upkeep_below_lamports=settings.sol_upkeep_below_lamports,
            sol_upkeep_share_bps=settings.sol_upkeep_share_bps,
        )


class KeeperOrchestrator:
    def __init__(
        self,
        gateway: VaultGateway,
        swap_adapter: SwapAdapter,
        preflight: PreflightChecker,
        state_store: AtomicStateStore,
        config: Optional[OrchestratorConfig] = None,
        alerts: Optional[AlertManager] = None,
        metrics: Optional[KeeperMetrics] = None,
        health: Optional[HealthChecker] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.gateway = gateway
        self.swap_adapter = swap_adapter
        self.preflight = preflight
        self.state_store = state_store
        self.config = config or OrchestratorConfig()
        self.alerts = alerts
        self.metrics = metrics
        self.health = health
        self._clock = clock

        self.runtime = RuntimeCycleState()
        self.artifact: Optional[PreflightArtifact] = None
        self._state = KeeperState.IDLE
        self._stop_event = asyncio.Event()
        self._fault: Optional[str] = None
        self._owner: Optional[Pubkey] = None

        self._log_event = self.config.log_event_callback or self._default_log
        self.backoff = FailureBackoff(
            BackoffConfig(
                interval_sec=self.config.tick_interval_sec,
                max_backoff_sec=self.config.max_backoff_sec,
                alert_threshold=self.config.alert_failure_threshold,
            ),
            log_event=self._log_event,
        )

    def _default_log(self, event: str, **kwargs: Any) -> None:
        payload = {"event": event, "vault": str(self.gateway.program_id), **kwargs}
        log.info(json.dumps(payload, default=str))

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @property
    def state(self) -> KeeperState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is KeeperState.RUNNING or self._state in CYCLE_STATES

    def _set_state(self, state: KeeperState) -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        self.runtime.last_state = state.value
        if self.metrics:
            self.metrics.set_state(state.value)
        self._log_event("state_change", previous=previous.value, state=state.value)

    async def load_state(self) -> RuntimeCycleState:
        self.runtime = RuntimeCycleState.from_dict(await self.state_store.load())
        self.backoff.failures = self.runtime.consecutive_failures
        self._log_event(
            "runtime_state_loaded",
            consecutive_failures=self.runtime.consecutive_failures,
            owner_share_due=self.runtime.owner_share_due,
            unswapped=self.runtime.unswapped_amount,
            undistributed=self.runtime.undistributed_amount,
            plan_recipients=len(self.runtime.distribution_plan),
            pending=self.runtime.has_pending(),
        )
        return self.runtime

    async def persist(self) -> None:
        self.runtime.consecutive_failures = self.backoff.failures
        await self.state_store.save(self.runtime.to_dict())
        if self.metrics:
            self.metrics.unswapped.set(self.runtime.unswapped_amount)
            self.metrics.undistributed.set(self.runtime.undistributed_amount)
            self.metrics.consecutive_failures.set(self.backoff.failures)

    async def start(self) -> PreflightArtifact:
        """
        Load runtime state and run preflight.

        Raises:
            PreflightFailure: the artifact did not pass; the orchestrator
                never enters RUNNING
        """
        if self._state is not KeeperState.IDLE:
            raise RuntimeError(f"cannot start from state {self._state.value}")
        self._set_state(KeeperState.PREFLIGHTING)
        await self.load_state()

        artifact = await self.preflight.run()
        self.artifact = artifact
        if not artifact.passed:
            failed = [c.name for c in artifact.checks if c.status is CheckStatus.FAIL]
            self._log_event("preflight_failed", failed=failed)
            if self.alerts:
                await self.alerts.alert_preflight_failed(failed)
            self._set_state(KeeperState.STOPPED)
            raise PreflightFailure(f"preflight failed: {', '.join(failed)}", artifact=artifact)

        self._set_state(KeeperState.RUNNING)
        if self.health:
            self.health.set_ready(True)
        if self.alerts:
            await self.alerts.alert_startup(vault=str(self.gateway.program_id))
        return artifact

    def stop(self) -> None:
        """Ask the loop to finish its in-flight cycle and exit."""
        if not self._stop_event.is_set():
            self._stop_event.set()
            self._log_event("stop_requested", state=self._state.value)
        if self._state is KeeperState.RUNNING:
            self._set_state(KeeperState.STOPPING)

    async def run_forever(self) -> None:
        """Run cycles until stop() or a fault. Starts (with preflight) if still IDLE."""
        if self._state is KeeperState.IDLE:
            await self.start()
        try:
            while not self._stop_event.is_set():
                await self.run_cycle()
                if self._state is KeeperState.FAULTED:
                    break
                delay = self.backoff.next_delay()
                self._log_event("next_tick_scheduled", delay_sec=delay, failures=self.backoff.failures)
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self._shutdown()

    async def _shutdown(self) -> None:
        if self.health:
            self.health.set_ready(False)
        if self._state is not KeeperState.FAULTED:
            self._set_state(KeeperState.STOPPING)
            self._set_state(KeeperState.STOPPED)
        self.runtime.stopped_at = self._clock()
        await self.persist()
        if self.alerts:
            reason = "normal" if self._state is KeeperState.STOPPED else (self._fault or "faulted")
            await self.alerts.alert_shutdown(reason, cycles=self.runtime.cycle_count)
        self._log_event("keeper_stopped", state=self._state.value, cycles=self.runtime.cycle_count)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleResult:
        """Execute one full cycle. Never raises for a step failure."""
        if self._state is KeeperState.FAULTED:
            return CycleResult(success=False, reason="faulted", failure_kind="faulted")

        start_time = time.perf_counter()
        self.runtime.cycle_count += 1
        result = CycleResult(success=False)
        self._log_event("cycle_start", cycle=self.runtime.cycle_count)

        try:
            if not await self._reconcile_pending():
                result.skipped = True
                result.success = True
                result.reason = "pending_unresolved"
            else:
                await self._check_operating_balance()
                harvested = await self._harvest_step(result)
                if not harvested and not self.runtime.has_carry_over(self.config.min_distribution_amount):
                    result.skipped = True
                    result.success = True
                    result.reason = result.reason or "below_threshold"
                else:
                    await self._owner_share_step(result)
                    await self._upkeep_step(result)
                    await self._swap_step(result)
                    await self._distribute_step(result)
                    result.success = True
                    if not result.moved_funds:
                        result.skipped = True
                        result.reason = result.reason or "nothing_moved"
        except FATAL_ERRORS as exc:
            await self._fault_with(exc, result)
        except KeeperError as exc:
            await self._record_failure(exc, result)
        except Exception as exc:
            log.exception("cycle_unexpected_error")
            await self._record_failure(exc, result)

        if result.success:
            await self._record_success(result)

        if self._state in CYCLE_STATES:
            self._set_state(KeeperState.STOPPING if self._stop_event.is_set() else KeeperState.RUNNING)
        result.duration_ms = (time.perf_counter() - start_time) * 1000
        await self.persist()

        if self.metrics:
            outcome = "skipped" if result.skipped else ("success" if result.success else "failure")
            self.metrics.cycles.labels(outcome=outcome).inc()
            self.metrics.cycle_duration_sec.observe(result.duration_ms / 1000)
        if self.health:
            self.health.heartbeat()

        self._log_event(
            "cycle_skipped" if result.skipped else "cycle_end",
            success=result.success,
            reason=result.reason,
            harvested=result.harvested,
            owner_paid=result.owner_paid,
            upkeep_in=result.upkeep_in,
            swapped_in=result.swapped_in,
            swapped_out=result.swapped_out,
            distributed=result.distributed,
            recipients=result.recipients,
            kind=result.failure_kind,
            duration_ms=round(result.duration_ms, 1),
        )
        return result

    async def _record_success(self, result: CycleResult) -> None:
        previous = self.backoff.record_success()
        if not result.skipped:
            self.runtime.last_success_ts = self._clock()
            if self.metrics:
                self.metrics.last_success_ts.set(self.runtime.last_success_ts)
        if self.runtime.alerting:
            self.runtime.alerting = False
            if self.alerts:
                await self.alerts.alert_recovered(previous)

    async def _record_failure(self, exc: BaseException, result: CycleResult) -> None:
        kind = failure_kind(exc)
        result.success = False
        result.failure_kind = kind
        result.error = str(exc)
        self.runtime.last_failure_kind = kind
        if self.metrics:
            self.metrics.cycle_failures.labels(kind=kind).inc()
        self._log_event("cycle_failed", kind=kind, error=str(exc), state=self._state.value)

        crossed = self.backoff.record_failure(kind, str(exc))
        if crossed or (self.backoff.alerting and not self.runtime.alerting):
            self.runtime.alerting = True
            self._log_event("failure_alert", failures=self.backoff.failures, kind=kind)
            if self.alerts:
                await self.alerts.alert_failure_streak(self.backoff.failures, kind, str(exc))

    async def _fault_with(self, exc: KeeperError, result: CycleResult) -> None:
        result.success = False
        result.failure_kind = exc.kind
        result.error = str(exc)
        self.runtime.last_failure_kind = exc.kind
        self._fault = str(exc)
        self._set_state(KeeperState.FAULTED)
        self._log_event("keeper_faulted", kind=exc.kind, error=str(exc))
        if self.alerts:
            await self.alerts.alert_faulted(str(exc), kind=exc.kind)

    # ------------------------------------------------------------------
    # Step 0: reconcile and balance guard
    # ------------------------------------------------------------------

    async def _reconcile_pending(self) -> bool:
        """
        Resolve submissions whose confirmation was never observed.

        Returns False while any of them is still unknown to the ledger and
        younger than pending_tx_expiry_sec; nothing new may be submitted then.
        """
        if not self.runtime.has_pending():
            return True
        ledger = self.gateway.ledger
        now = self._clock()
        resolved = True
        for step in RECONCILE_ORDER:
            pending: Optional[PendingSubmission] = getattr(self.runtime, f"pending_{step}")
            if pending is None:
                continue
            status = await ledger.get_signature_status(pending.signature)
            if status is not None and status.outcome is ConfirmationOutcome.CONFIRMED:
                self._apply_confirmed(step, pending)
                self._log_event("pending_confirmed", step=step, signature=pending.signature, amount=pending.amount)
            elif status is not None and status.outcome is ConfirmationOutcome.FAILED:
                self._log_event("pending_failed", step=step, signature=pending.signature, error=status.error)
            elif now - pending.since >= self.config.pending_tx_expiry_sec:
                # Carried amounts are capped at real balances before they are spent again.
                self._log_event("pending_expired", step=step, signature=pending.signature, age_sec=now - pending.since)
            else:
                self._log_event("pending_tx_unknown", step=step, signature=pending.signature, age_sec=now - pending.since)
                resolved = False
                continue
            setattr(self.runtime, f"pending_{step}", None)
            await self.persist()
        return resolved

    def _apply_confirmed(self, step: str, pending: PendingSubmission) -> None:
        rt = self.runtime
        if step == "harvest":
            self._credit_harvest(pending.amount)
        elif step == "owner_share":
            rt.owner_share_due = max(0, rt.owner_share_due - pending.amount)
            rt.owner_paid_total += pending.amount
        elif step == "upkeep":
            rt.unswapped_amount = max(0, rt.unswapped_amount - pending.amount)
        elif step == "swap":
            rt.unswapped_amount = max(0, rt.unswapped_amount - pending.amount)
            rt.undistributed_amount += pending.expected_out
        else:
            rt.undistributed_amount = max(0, rt.undistributed_amount - pending.amount)
            rt.distribution_plan = rt.distribution_plan[pending.recipients:]
            rt.distributed_total += pending.amount
            rt.last_distribution_signature = pending.signature

    async def _check_operating_balance(self) -> None:
        """Refuse to start a cycle the keeper cannot pay fees for."""
        if self.config.min_operating_balance <= 0:
            return
        balance = await self.gateway.get_keeper_sol_balance()
        healthy = balance >= self.config.min_operating_balance
        if self.metrics:
            self.metrics.sol_balance.set(balance)
        if self.health:
            self.health.set_component_health("balance", healthy, f"{balance} lamports")
        if not healthy:
            raise LowOperatingBalance(balance, self.config.min_operating_balance)

    # ------------------------------------------------------------------
    # Steps 1-2: harvest and owner share
    # ------------------------------------------------------------------

    def _credit_harvest(self, amount: int) -> None:
        rt = self.runtime
        owner_part = amount * self.config.owner_share_bps // 10_000
        rt.owner_share_due += owner_part
        rt.unswapped_amount += amount - owner_part
        rt.last_harvested_amount = amount

    async def _on_harvest_submitted(self, signature: str, amount: int) -> None:
        self.runtime.pending_harvest = PendingSubmission(signature, amount, self._clock())
        await self.persist()

    async def _harvest_step(self, result: CycleResult) -> bool:
        self._set_state(KeeperState.HARVESTING)
        try:
            receipt = await self.gateway.harvest(on_submitted=self._on_harvest_submitted)
        except NothingToHarvest as exc:
            result.reason = "below_threshold"
            self._log_event("harvest_skipped", available=exc.available, threshold=exc.threshold)
            return False
        except Indeterminate as exc:
            # pending_harvest stays recorded; the next tick reconciles it
            if self.alerts:
                await self.alerts.alert_indeterminate("harvest", exc.signature)
            raise
        except LedgerTransactionFailed:
            self.runtime.pending_harvest = None
            raise

        self.runtime.pending_harvest = None
        self._credit_harvest(receipt.amount)
        result.harvested = receipt.amount
        if self.metrics:
            self.metrics.harvested.inc(receipt.amount)
        await self.persist()
        return True

    async def _owner_wallet(self) -> Pubkey:
        if self._owner is None:
            if self.config.owner_wallet:
                self._owner = parse_pubkey(self.config.owner_wallet, "owner_wallet")
            else:
                tax_config = await self.gateway.get_tax_config()
                if tax_config is None:
                    raise ConfigValidationError("owner share is configured but no owner wallet is known")
                self._owner = tax_config.owner_wallet
        return self._owner

    async def _on_owner_share_submitted(self, signature: str, amount: int) -> None:
        self.runtime.pending_owner_share = PendingSubmission(signature, amount, self._clock())
        await self.persist()

    async def _owner_share_step(self, result: CycleResult) -> None:
        rt = self.runtime
        if rt.owner_share_due <= 0:
            return
        available = await self.gateway.get_keeper_token_balance()
        if rt.owner_share_due > available:
            self._log_event("owner_share_exceeds_balance", recorded=rt.owner_share_due, balance=available)
            rt.owner_share_due = available
        if rt.owner_share_due <= 0:
            await self.persist()
            return

        owner = await self._owner_wallet()
        try:
            receipt = await self.gateway.pay_owner_share(
                owner,
                rt.owner_share_due,
                on_submitted=self._on_owner_share_submitted,
            )
        except Indeterminate as exc:
            if self.alerts:
                await self.alerts.alert_indeterminate("owner_share", exc.signature)
            raise
        except LedgerTransactionFailed:
            rt.pending_owner_share = None
            raise

        rt.pending_owner_share = None
        rt.owner_share_due = max(0, rt.owner_share_due - receipt.amount)
        rt.owner_paid_total += receipt.amount
        result.owner_paid = receipt.amount
        if self.metrics:
            self.metrics.owner_paid.inc(receipt.amount)
        await self.persist()

    # ------------------------------------------------------------------
    # Steps 3-4: quote and swap
    # ------------------------------------------------------------------

    async def _swappable_amount(self) -> int:
        """Cap unswapped_amount at the tokens held beyond the owner's share."""
        rt = self.runtime
        available = max(0, await self.gateway.get_keeper_token_balance() - rt.owner_share_due)
        if rt.unswapped_amount > available:
            self._log_event("unswapped_exceeds_balance", recorded=rt.unswapped_amount, balance=available)
            rt.unswapped_amount = available
        return rt.unswapped_amount

    async def _quote(self, output_mint: str, amount: int) -> SwapQuote:
        self._set_state(KeeperState.QUOTING)
        params = SwapParams(
            input_mint=str(self.gateway.token_mint),
            output_mint=output_mint,
            amount=amount,
            slippage_bps=self.config.slippage_bps,
        )
        quote = await self.swap_adapter.quote(params)
        self._log_event(
            "quote_received",
            output_mint=output_mint,
            in_amount=quote.in_amount,
            out_amount=quote.out_amount,
            min_out=quote.min_out_amount,
            price_impact_pct=quote.price_impact_pct,
        )
        if quote.price_impact_pct > self.config.max_price_impact_pct:
            raise PriceImpactExceeded(
                f"price impact {quote.price_impact_pct:.2f}% above ceiling {self.config.max_price_impact_pct:.2f}%",
                price_impact_pct=quote.price_impact_pct,
            )
        if self.metrics:
            self.metrics.price_impact_pct.set(quote.price_impact_pct)
        return quote

    async def _upkeep_step(self, result: CycleResult) -> None:
        """Sell part of the holders' share for SOL while the keeper runs low."""
        cfg, rt = self.config, self.runtime
        if cfg.sol_upkeep_below_lamports <= 0 or cfg.sol_upkeep_share_bps <= 0 or rt.unswapped_amount <= 0:
            return
        balance = await self.gateway.get_keeper_sol_balance()
        if balance >= cfg.sol_upkeep_below_lamports:
            return
        amount = await self._swappable_amount() * cfg.sol_upkeep_share_bps // 10_000
        if amount <= 0:
            return
        self._log_event("sol_upkeep_needed", balance=balance, threshold=cfg.sol_upkeep_below_lamports, amount=amount)

        # Best effort: a top-up that cannot be routed or priced must not hold back distribution.
        try:
            quote = await self._quote(str(NATIVE_MINT), amount)
        except (InsufficientLiquidity, PriceImpactExceeded) as exc:
            self._log_event("sol_upkeep_skipped", kind=exc.kind, error=str(exc))
            return

        self._set_state(KeeperState.SWAPPING)
        try:
            swap_result = await self.swap_adapter.swap(quote, self.gateway.keeper)
        except Indeterminate as exc:
            if exc.signature:
                rt.pending_upkeep = PendingSubmission(exc.signature, quote.in_amount, self._clock(), quote.out_amount)
            await self.persist()
            if self.alerts:
                await self.alerts.alert_indeterminate("sol_upkeep", exc.signature)
            raise
        except (SlippageExceeded, StaleQuote) as exc:
            self._log_event("sol_upkeep_skipped", kind=exc.kind, error=str(exc))
            return

        rt.unswapped_amount = max(0, rt.unswapped_amount - swap_result.in_amount)
        result.upkeep_in = swap_result.in_amount
        result.upkeep_out = swap_result.out_amount
        self._log_event(
            "sol_upkeep_swapped",
            signature=swap_result.signature,
            in_amount=swap_result.in_amount,
            out_lamports=swap_result.out_amount,
        )
        if self.metrics:
            self.metrics.upkeep_swapped_in.inc(swap_result.in_amount)
        await self.persist()

    async def _swap_step(self, result: CycleResult) -> None:
        rt = self.runtime
        if rt.unswapped_amount <= 0:
            return

        if self.gateway.reward_mint == self.gateway.token_mint:
            # Rewards are paid in the taxed token itself.
            rt.undistributed_amount += rt.unswapped_amount
            rt.unswapped_amount = 0
            await self.persist()
            return

        amount = await self._swappable_amount()
        if amount <= 0:
            await self.persist()
            return

        quote = await self._quote(str(self.gateway.reward_mint), amount)
        rt.last_swap_quote = quote.to_dict()

        self._set_state(KeeperState.SWAPPING)
        try:
            swap_result = await self.swap_adapter.swap(
                quote,
                self.gateway.keeper,
                output_account=self.gateway.keeper_reward_account,
            )
        except Indeterminate as exc:
            if exc.signature:
                rt.pending_swap = PendingSubmission(exc.signature, quote.in_amount, self._clock(), quote.out_amount)
            await self.persist()
            if self.alerts:
                await self.alerts.alert_indeterminate("swap", exc.signature)
            raise

        rt.unswapped_amount = max(0, rt.unswapped_amount - swap_result.in_amount)
        rt.undistributed_amount += swap_result.out_amount
        rt.last_swap_result = swap_result.to_dict()
        result.swapped_in = swap_result.in_amount
        result.swapped_out = swap_result.out_amount
        if self.metrics:
            self.metrics.swapped_in.inc(swap_result.in_amount)
            self.metrics.swapped_out.inc(swap_result.out_amount)
        await self.persist()

    # ------------------------------------------------------------------
    # Steps 5-6: exclusions, allocation, distribution
    # ------------------------------------------------------------------

    async def _on_distribution_submitted(self, signature: str, amount: int, recipients: int = 0) -> None:
        self.runtime.pending_distribution = PendingSubmission(signature, amount, self._clock(), recipients=recipients)
        await self.persist()

    async def _cap_undistributed(self) -> None:
        rt = self.runtime
        balance = await self.gateway.get_keeper_reward_balance()
        if self.gateway.reward_mint == self.gateway.token_mint:
            # One account holds the owner's share, unswapped and reward tokens.
            balance = max(0, balance - rt.owner_share_due - rt.unswapped_amount)
        if rt.undistributed_amount > balance:
            self._log_event("undistributed_exceeds_balance", recorded=rt.undistributed_amount, balance=balance)
            rt.undistributed_amount = balance
        if rt.distribution_plan and rt.plan_total > rt.undistributed_amount:
            self._log_event(
                "distribution_plan_discarded",
                plan_total=rt.plan_total,
                undistributed=rt.undistributed_amount,
            )
            rt.distribution_plan = []
        await self.persist()

    async def _plan_distribution(self, exclusions) -> bool:
        """Compute and persist a plan for undistributed_amount. False when there is nothing to pay."""
        rt = self.runtime
        if rt.undistributed_amount < max(1, self.config.min_distribution_amount):
            self._log_event("distribution_carried_over", amount=rt.undistributed_amount, reason="below_minimum")
            return False
        holders = await self.gateway.get_holders()
        plan = compute_allocations(rt.undistributed_amount, holders, exclusions, self.config.min_hold_amount)
        self._log_event(
            "allocation_computed",
            amount=rt.undistributed_amount,
            holders=len(holders),
            recipients=len(plan.allocations),
            skipped_excluded=plan.skipped_excluded,
            skipped_below_minimum=plan.skipped_below_minimum,
        )
        if not plan.allocations:
            self._log_event("distribution_carried_over", amount=rt.undistributed_amount, reason="no_eligible_holders")
            return False
        rt.distribution_plan = [{"recipient": a.recipient, "amount": a.amount} for a in plan.allocations]
        await self.persist()
        return True

    async def _distribute_step(self, result: CycleResult) -> None:
        rt = self.runtime
        if rt.undistributed_amount <= 0 and not rt.distribution_plan:
            return

        await self._cap_undistributed()
        exclusions = await self.gateway.refresh_exclusions()
        if rt.distribution_plan:
            self._log_event("distribution_resumed", recipients=len(rt.distribution_plan), amount=rt.plan_total)
        elif not await self._plan_distribution(exclusions):
            return

        self._set_state(KeeperState.DISTRIBUTING)
        max_age = self.gateway.config.exclusion_max_age_sec
        size = self.config.distribution_batch_size
        while rt.distribution_plan:
            if exclusions.is_stale(max_age, self._clock()):
                exclusions = await self.gateway.refresh_exclusions()
            head = rt.distribution_plan[:size]
            batch = [
                Allocation(entry["recipient"], entry["amount"])
                for entry in head
                if not exclusions.is_reward_excluded(entry["recipient"])
            ]
            if not batch:
                # Excluded since planning; their amounts stay undistributed.
                self._log_event("distribution_batch_dropped", recipients=len(head), reason="excluded")
                rt.distribution_plan = rt.distribution_plan[len(head):]
                await self.persist()
                continue
            try:
                receipt = await self.gateway.distribute(
                    batch,
                    exclusions,
                    on_submitted=functools.partial(self._on_distribution_submitted, recipients=len(head)),
                )
            except Indeterminate as exc:
                if self.alerts:
                    await self.alerts.alert_indeterminate("distribution", exc.signature)
                raise
            except LedgerTransactionFailed:
                rt.pending_distribution = None
                raise

            rt.pending_distribution = None
            rt.distribution_plan = rt.distribution_plan[len(head):]
            rt.undistributed_amount = max(0, rt.undistributed_amount - receipt.amount)
            rt.distributed_total += receipt.amount
            rt.last_distribution_signature = receipt.signature
            result.distributed += receipt.amount
            result.recipients += receipt.recipients
            if self.metrics:
                self.metrics.distributed.inc(receipt.amount)
                self.metrics.recipients.inc(receipt.recipients)
            await self.persist()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        return {
            "vault": str(self.gateway.program_id),
            "state": self._state.value,
            "cycle_count": self.runtime.cycle_count,
            "consecutive_failures": self.backoff.failures,
            "next_delay_sec": self.backoff.next_delay(),
            "last_success_ts": self.runtime.last_success_ts,
            "last_harvested_amount": self.runtime.last_harvested_amount,
            "owner_share_due": self.runtime.owner_share_due,
            "unswapped_amount": self.runtime.unswapped_amount,
            "undistributed_amount": self.runtime.undistributed_amount,
            "plan_recipients": len(self.runtime.distribution_plan),
            "pending": self.runtime.has_pending(),
            "alerting": self.runtime.alerting,
            "preflight": self.artifact.overall.value if self.artifact else None,
        }
