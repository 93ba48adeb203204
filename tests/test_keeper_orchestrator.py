"""
Tests for KeeperOrchestrator - the harvest -> swap -> distribute loop.

Tests cover:
- Full cycle against the simulated vault and swap
- Skips below the harvest threshold
- Crash / restart resume without double harvest
- Slippage and price impact rejection before funds move
- Exclusion enforcement
- Owner share, SOL upkeep and the operating balance guard
- Unacknowledged sends and carried amounts capped at real balances
- Preflight gating, backoff, alerting, stop and faults
"""

import asyncio

import pytest
from solders.keypair import Keypair

from fakes import FakeClock, SimulatedSwapAdapter, VaultWorld
from keeper.errors import PreflightFailure
from keeper.ledger.derivation import TOKEN_2022_PROGRAM_ID, associated_token_address
from keeper.orchestrator.keeper_orchestrator import KeeperState
from keeper.preflight.preflight import CheckStatus
from keeper.state.cycle_state import PendingSubmission
from keeper.vault.gateway import ExclusionAction, ExclusionListKind


def holders():
    a, b, whale, minnow = (Keypair().pubkey() for _ in range(4))
    return {"a": a, "b": b, "whale": whale, "minnow": minnow}


def standard_world(**kw):
    h = holders()
    world = VaultWorld(
        holders=[(h["a"], 600_000), (h["b"], 300_000), (h["whale"], 5_000_000), (h["minnow"], 50_000)],
        reward_excluded=[h["whale"]],
        **kw,
    )
    return world, h


class EventLog:
    def __init__(self):
        self.events = []

    def __call__(self, event, **kwargs):
        self.events.append((event, kwargs))

    def named(self, name):
        return [kw for e, kw in self.events if e == name]


class TestFullCycle:
    @pytest.mark.asyncio
    async def test_harvest_swap_distribute(self, build_keeper):
        world, h = standard_world(withheld=1_000_000)
        swap = SimulatedSwapAdapter(world.ledger, rate=0.5, price_impact_pct=1.5)
        orch = build_keeper(world, swap=swap)
        await orch.start()
        assert orch.state is KeeperState.RUNNING

        result = await orch.run_cycle()
        assert result.success and not result.skipped
        assert result.harvested == 1_000_000
        assert result.swapped_in == 1_000_000
        assert result.swapped_out == 500_000

        rt = orch.runtime
        assert rt.last_harvested_amount == 1_000_000
        assert rt.unswapped_amount == 0
        # 500_000 split over 900_000 eligible balance; one unit of dust carries over
        assert world.reward_balance(h["a"]) == 333_333
        assert world.reward_balance(h["b"]) == 166_666
        assert world.reward_balance(h["whale"]) == 0
        assert world.reward_balance(h["minnow"]) == 0
        assert rt.undistributed_amount == 1
        assert rt.distributed_total == 499_999
        assert rt.last_success_ts is not None
        assert rt.last_swap_quote["price_impact_pct"] == 1.5
        assert orch.state is KeeperState.RUNNING

    @pytest.mark.asyncio
    async def test_state_persisted_after_cycle(self, build_keeper, tmp_path):
        world, _ = standard_world()
        orch = build_keeper(world)
        await orch.start()
        await orch.run_cycle()
        saved = await orch.state_store.load()
        assert saved["last_harvested_amount"] == 1_000_000
        assert saved["consecutive_failures"] == 0
        assert saved["pending_harvest"] is None

    @pytest.mark.asyncio
    async def test_batches_distribution(self, build_keeper):
        people = [Keypair().pubkey() for _ in range(5)]
        world = VaultWorld(holders=[(p, 200_000) for p in people])
        orch = build_keeper(world, distribution_batch_size=2)
        await orch.start()
        result = await orch.run_cycle()
        assert result.recipients == 5
        assert len(world.program.distributions) == 3
        assert all(world.reward_balance(p) == 100_000 for p in people)

    @pytest.mark.asyncio
    async def test_reward_paid_in_taxed_token(self, build_keeper):
        a = Keypair().pubkey()
        world = VaultWorld(holders=[(a, 200_000)], reward_in_token=True)
        swap = SimulatedSwapAdapter(world.ledger)
        orch = build_keeper(world, swap=swap)
        await orch.start()
        result = await orch.run_cycle()
        assert result.success
        assert swap.quotes == []
        assert world.reward_balance(a) == 1_000_000


class TestSkips:
    @pytest.mark.asyncio
    async def test_below_threshold_is_a_skip(self, build_keeper):
        world, _ = standard_world(withheld=100_000)
        swap = SimulatedSwapAdapter(world.ledger)
        orch = build_keeper(world, swap=swap)
        await orch.start()
        result = await orch.run_cycle()
        assert result.success and result.skipped
        assert result.reason == "below_threshold"
        assert world.ledger.submitted == []
        assert swap.quotes == []
        assert orch.runtime.last_success_ts is None
        assert orch.backoff.failures == 0

    @pytest.mark.asyncio
    async def test_no_eligible_holders_carries_over(self, build_keeper):
        whale = Keypair().pubkey()
        world = VaultWorld(holders=[(whale, 9_000_000)], reward_excluded=[whale])
        orch = build_keeper(world)
        await orch.start()
        result = await orch.run_cycle()
        assert result.success
        assert result.distributed == 0
        assert orch.runtime.undistributed_amount == 500_000
        assert world.program.distributions == []

    @pytest.mark.asyncio
    async def test_rounding_dust_does_not_defeat_the_skip(self, build_keeper):
        world, _ = standard_world()
        clock = FakeClock()
        orch = build_keeper(world, clock=clock)
        await orch.start()
        await orch.run_cycle()
        assert orch.runtime.undistributed_amount == 1
        last_success = orch.runtime.last_success_ts

        clock.advance(300)
        result = await orch.run_cycle()
        assert result.success and result.skipped
        assert result.reason == "below_threshold"
        assert orch.runtime.last_success_ts == last_success
        assert orch.runtime.undistributed_amount == 1

    @pytest.mark.asyncio
    async def test_carry_over_below_minimum_distribution_waits(self, build_keeper):
        a = Keypair().pubkey()
        world = VaultWorld(withheld=0, holders=[(a, 400_000)])
        orch = build_keeper(world, min_distribution_amount=1_000)
        await orch.start()
        world.ledger.set_token_balance(orch.gateway.keeper_reward_account, 999, mint=world.reward_mint)
        orch.runtime.undistributed_amount = 999
        result = await orch.run_cycle()
        assert result.skipped
        assert world.program.distributions == []
        assert orch.runtime.undistributed_amount == 999


class TestResume:
    @pytest.mark.asyncio
    async def test_restart_after_unobserved_harvest(self, build_keeper, tmp_path):
        world, h = standard_world()
        world.ledger.hide_next = 1
        first = build_keeper(world)
        first.gateway.config.confirm_timeout_sec = 0.05
        await first.start()
        result = await first.run_cycle()
        assert not result.success
        assert result.failure_kind == "indeterminate"
        pending = first.runtime.pending_harvest
        assert pending is not None and pending.amount == 1_000_000

        # process dies; the harvest lands and becomes visible afterwards
        world.ledger.reveal(pending.signature)
        second = build_keeper(world)
        await second.start()
        assert second.runtime.pending_harvest.signature == pending.signature
        result = await second.run_cycle()

        assert result.success
        assert world.program.harvests == [1_000_000]
        assert second.runtime.pending_harvest is None
        assert second.runtime.last_harvested_amount == 1_000_000
        assert world.reward_balance(h["a"]) == 333_333
        assert world.reward_balance(h["b"]) == 166_666

    @pytest.mark.asyncio
    async def test_unknown_pending_blocks_new_submissions(self, build_keeper):
        world, _ = standard_world()
        clock = FakeClock()
        orch = build_keeper(world, clock=clock, pending_tx_expiry_sec=120)
        await orch.start()
        orch.runtime.pending_harvest = PendingSubmission("never-landed", 1_000_000, clock())

        result = await orch.run_cycle()
        assert result.skipped and result.reason == "pending_unresolved"
        assert world.ledger.submitted == []

        clock.advance(121)
        result = await orch.run_cycle()
        assert orch.runtime.pending_harvest is None
        assert result.harvested == 1_000_000

    @pytest.mark.asyncio
    async def test_failed_pending_cleared_without_credit(self, build_keeper):
        world, _ = standard_world(withheld=0)
        orch = build_keeper(world)
        await orch.start()
        world.ledger.fail_next = "custom program error"
        signature = world.ledger.execute(lambda: None)
        orch.runtime.pending_harvest = PendingSubmission(signature, 1_000_000, orch._clock())

        result = await orch.run_cycle()
        assert result.skipped
        assert orch.runtime.pending_harvest is None
        assert orch.runtime.unswapped_amount == 0

    @pytest.mark.asyncio
    async def test_carry_over_survives_restart(self, build_keeper):
        world, h = standard_world()
        swap = SimulatedSwapAdapter(world.ledger, price_impact_pct=9.0)
        first = build_keeper(world, swap=swap)
        await first.start()
        result = await first.run_cycle()
        assert result.failure_kind == "price_impact"
        assert first.runtime.unswapped_amount == 1_000_000

        second = build_keeper(world, swap=SimulatedSwapAdapter(world.ledger, price_impact_pct=0.5))
        await second.start()
        assert second.runtime.unswapped_amount == 1_000_000
        result = await second.run_cycle()
        assert result.success
        assert result.harvested == 0
        assert result.swapped_in == 1_000_000
        assert world.program.harvests == [1_000_000]


class TestSwapProtection:
    @pytest.mark.asyncio
    async def test_slippage_rejected_before_funds_move(self, build_keeper):
        world, h = standard_world()
        swap = SimulatedSwapAdapter(world.ledger, rate=0.5, execution_rate=0.4)
        orch = build_keeper(world, swap=swap)
        await orch.start()

        result = await orch.run_cycle()
        assert not result.success
        assert result.failure_kind == "slippage_exceeded"
        assert world.ledger.token_balance(world.keeper_token_account) == 1_000_000
        assert orch.runtime.unswapped_amount == 1_000_000
        assert world.reward_balance(h["a"]) == 0

        swap.execution_rate = None
        result = await orch.run_cycle()
        assert result.success
        assert world.program.harvests == [1_000_000]
        assert world.reward_balance(h["a"]) == 333_333

    @pytest.mark.asyncio
    async def test_price_impact_ceiling(self, build_keeper):
        world, _ = standard_world()
        swap = SimulatedSwapAdapter(world.ledger, price_impact_pct=2.5)
        orch = build_keeper(world, swap=swap, max_price_impact_pct=2.0)
        await orch.start()
        result = await orch.run_cycle()
        assert result.failure_kind == "price_impact"
        assert swap.swaps == []
        assert world.ledger.token_balance(world.keeper_token_account) == 1_000_000

    @pytest.mark.asyncio
    async def test_insufficient_liquidity(self, build_keeper):
        world, _ = standard_world()
        orch = build_keeper(world, swap=SimulatedSwapAdapter(world.ledger, liquidity=10))
        await orch.start()
        result = await orch.run_cycle()
        assert result.failure_kind == "insufficient_liquidity"
        assert orch.runtime.unswapped_amount == 1_000_000


class TestExclusions:
    @pytest.mark.asyncio
    async def test_excluded_address_never_paid(self, build_keeper):
        world, h = standard_world()
        orch = build_keeper(world)
        await orch.start()
        await orch.run_cycle()
        for batch in world.program.distributions:
            assert str(h["whale"]) not in {owner for owner, _ in batch}

    @pytest.mark.asyncio
    async def test_exclusion_added_between_cycles(self, build_keeper):
        world, h = standard_world()
        orch = build_keeper(world)
        await orch.start()
        await orch.run_cycle()
        paid_a = world.reward_balance(h["a"])

        await orch.gateway.manage_exclusion(ExclusionAction.ADD, ExclusionListKind.REWARD, h["a"])
        world.set_withheld(1_000_000)
        await orch.run_cycle()
        assert world.reward_balance(h["a"]) == paid_a
        assert world.reward_balance(h["b"]) > 166_666


class TestPreflightGate:
    @pytest.mark.asyncio
    async def test_failed_preflight_never_runs(self, build_keeper, alerts):
        world, _ = standard_world()
        events = EventLog()
        orch = build_keeper(world, alerts=alerts, log_event_callback=events)
        world.ledger.unreachable = True

        with pytest.raises(PreflightFailure) as exc:
            await orch.start()
        artifact = exc.value.artifact
        assert artifact.overall is CheckStatus.FAIL
        assert artifact.check("connectivity").status is CheckStatus.FAIL
        assert orch.state is KeeperState.STOPPED
        assert "RUNNING" not in [kw["state"] for kw in events.named("state_change")]
        assert orch.preflight.artifact_path.exists()
        assert any(a.title == "Preflight Failed" for a in alerts.sent)

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, build_keeper):
        world, _ = standard_world()
        orch = build_keeper(world)
        await orch.start()
        with pytest.raises(RuntimeError):
            await orch.start()


class TestFailures:
    @pytest.mark.asyncio
    async def test_connectivity_failures_back_off_and_alert_once(self, build_keeper, alerts, metrics):
        world, _ = standard_world()
        orch = build_keeper(world, alerts=alerts, metrics=metrics, tick_interval_sec=1.0, max_backoff_sec=30.0)
        await orch.start()
        world.ledger.unreachable = True

        delays = []
        for _ in range(4):
            result = await orch.run_cycle()
            assert result.failure_kind == "connectivity"
            delays.append(orch.backoff.next_delay())
        assert delays == [2.0, 4.0, 8.0, 16.0]
        streak_alerts = [a for a in alerts.sent if a.title == "Keeper Cycles Failing"]
        assert len(streak_alerts) == 1
        assert orch.runtime.alerting
        assert (await orch.state_store.load())["consecutive_failures"] == 4

        world.ledger.unreachable = False
        result = await orch.run_cycle()
        assert result.success
        assert orch.backoff.failures == 0
        assert not orch.runtime.alerting
        assert any(a.title == "Keeper Recovered" for a in alerts.sent)

    @pytest.mark.asyncio
    async def test_failure_streak_survives_restart(self, build_keeper):
        world, _ = standard_world()
        first = build_keeper(world)
        await first.start()
        world.ledger.unreachable = True
        await first.run_cycle()
        await first.run_cycle()

        world.ledger.unreachable = False
        second = build_keeper(world)
        await second.start()
        assert second.backoff.failures == 2

    @pytest.mark.asyncio
    async def test_missing_mint_faults(self, build_keeper, alerts):
        world, _ = standard_world()
        orch = build_keeper(world, alerts=alerts)
        await orch.start()
        world.ledger.remove_account(world.token_mint)
        result = await orch.run_cycle()
        assert result.failure_kind == "config"
        assert orch.state is KeeperState.FAULTED
        again = await orch.run_cycle()
        assert again.reason == "faulted"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_stop_drains_and_persists(self, build_keeper):
        world, _ = standard_world()
        orch = build_keeper(world, tick_interval_sec=30.0, max_backoff_sec=60.0)
        task = asyncio.create_task(orch.run_forever())
        for _ in range(200):
            if orch.runtime.cycle_count >= 1 and orch.state is KeeperState.RUNNING:
                break
            await asyncio.sleep(0.01)
        orch.stop()
        await asyncio.wait_for(task, timeout=5)

        assert orch.state is KeeperState.STOPPED
        saved = await orch.state_store.load()
        assert saved["stopped_at"] is not None
        assert saved["last_state"] == "STOPPED"
        assert saved["cycle_count"] == 1

    @pytest.mark.asyncio
    async def test_run_forever_exits_on_fault(self, build_keeper):
        world, _ = standard_world()
        orch = build_keeper(world)
        await orch.start()
        world.ledger.remove_account(world.token_mint)
        await asyncio.wait_for(orch.run_forever(), timeout=5)
        assert orch.state is KeeperState.FAULTED

    @pytest.mark.asyncio
    async def test_stats(self, build_keeper):
        world, _ = standard_world()
        orch = build_keeper(world)
        await orch.start()
        await orch.run_cycle()
        stats = orch.get_stats()
        assert stats["state"] == "RUNNING"
        assert stats["preflight"] == "pass"
        assert stats["cycle_count"] == 1
        assert stats["last_harvested_amount"] == 1_000_000
        assert stats["owner_share_due"] == 0
        assert stats["plan_recipients"] == 0


class TestUnacknowledgedSends:
    @pytest.mark.asyncio
    async def test_landed_batch_is_not_paid_twice(self, build_keeper, alerts):
        a, b = Keypair().pubkey(), Keypair().pubkey()
        world = VaultWorld(withheld=0, holders=[(a, 400_000), (b, 400_000)])
        orch = build_keeper(world, alerts=alerts, distribution_batch_size=1)
        await orch.start()
        world.ledger.set_token_balance(orch.gateway.keeper_reward_account, 800_000, mint=world.reward_mint)
        orch.runtime.undistributed_amount = 800_000
        world.ledger.lose_ack_next = 1

        result = await orch.run_cycle()
        assert result.failure_kind == "indeterminate"
        pending = orch.runtime.pending_distribution
        assert pending is not None and pending.recipients == 1
        assert len(orch.runtime.distribution_plan) == 2
        assert any(alert.title == "Transaction Outcome Unknown" for alert in alerts.sent)

        result = await orch.run_cycle()
        assert result.success
        assert result.distributed == 400_000
        assert world.reward_balance(a) == 400_000
        assert world.reward_balance(b) == 400_000
        assert len(world.program.distributions) == 2
        assert orch.runtime.undistributed_amount == 0
        assert orch.runtime.distribution_plan == []
        assert orch.runtime.distributed_total == 800_000

    @pytest.mark.asyncio
    async def test_plan_resumes_after_restart(self, build_keeper):
        a, b = Keypair().pubkey(), Keypair().pubkey()
        world = VaultWorld(withheld=0, holders=[(a, 400_000), (b, 400_000)])
        first = build_keeper(world, distribution_batch_size=1)
        await first.start()
        world.ledger.set_token_balance(first.gateway.keeper_reward_account, 800_000, mint=world.reward_mint)
        first.runtime.undistributed_amount = 800_000
        world.ledger.lose_ack_next = 1
        await first.run_cycle()

        second = build_keeper(world, distribution_batch_size=1)
        await second.start()
        assert len(second.runtime.distribution_plan) == 2
        result = await second.run_cycle()
        assert result.success
        assert world.reward_balance(a) == 400_000
        assert world.reward_balance(b) == 400_000

    @pytest.mark.asyncio
    async def test_carried_amount_capped_at_reward_balance(self, build_keeper):
        a = Keypair().pubkey()
        world = VaultWorld(withheld=0, holders=[(a, 400_000)])
        events = EventLog()
        orch = build_keeper(world, log_event_callback=events)
        await orch.start()
        # paid out by a batch that landed after its pending entry expired
        orch.runtime.undistributed_amount = 500_000

        result = await orch.run_cycle()
        assert result.success
        assert result.failure_kind is None
        assert orch.runtime.undistributed_amount == 0
        assert world.program.distributions == []
        assert events.named("undistributed_exceeds_balance")[0]["balance"] == 0


class TestOwnerShare:
    @pytest.mark.asyncio
    async def test_owner_share_split_off_harvest(self, build_keeper, metrics):
        world, h = standard_world()
        owner = Keypair().pubkey()
        orch = build_keeper(world, metrics=metrics, owner_share_bps=2_000, owner_wallet=str(owner))
        await orch.start()

        result = await orch.run_cycle()
        assert result.success
        assert result.owner_paid == 200_000
        owner_account = associated_token_address(owner, world.token_mint, TOKEN_2022_PROGRAM_ID)
        assert world.ledger.token_balance(owner_account) == 200_000
        assert result.swapped_in == 800_000
        assert world.reward_balance(h["a"]) == 266_666
        assert world.reward_balance(h["b"]) == 133_333
        assert orch.runtime.owner_share_due == 0
        assert orch.runtime.owner_paid_total == 200_000
        assert metrics.registry.get_sample_value("keeper_owner_paid_amount_total") == 200_000

    @pytest.mark.asyncio
    async def test_unacknowledged_owner_payment_reconciled_once(self, build_keeper):
        world = VaultWorld(withheld=0)
        owner = Keypair().pubkey()
        orch = build_keeper(world, owner_share_bps=2_000, owner_wallet=str(owner))
        await orch.start()
        world.ledger.set_token_balance(
            world.keeper_token_account,
            300_000,
            mint=world.token_mint,
            owner=world.keeper.pubkey(),
            token_program=TOKEN_2022_PROGRAM_ID,
        )
        orch.runtime.owner_share_due = 300_000
        world.ledger.lose_ack_next = 1

        result = await orch.run_cycle()
        assert result.failure_kind == "indeterminate"
        assert orch.runtime.pending_owner_share.amount == 300_000

        result = await orch.run_cycle()
        assert result.success
        owner_account = associated_token_address(owner, world.token_mint, TOKEN_2022_PROGRAM_ID)
        assert world.ledger.token_balance(owner_account) == 300_000
        assert orch.runtime.owner_share_due == 0
        assert orch.runtime.owner_paid_total == 300_000
        assert orch.runtime.pending_owner_share is None


class TestOperatingBalance:
    @pytest.mark.asyncio
    async def test_low_sol_sells_part_of_holder_share(self, build_keeper):
        world, h = standard_world(keeper_lamports=80_000_000)
        swap = SimulatedSwapAdapter(world.ledger, rate=0.5)
        orch = build_keeper(world, swap=swap)
        await orch.start()

        result = await orch.run_cycle()
        assert result.success
        assert result.upkeep_in == 200_000
        assert result.upkeep_out == 100_000
        assert await world.ledger.get_balance(world.keeper.pubkey()) == 80_100_000
        assert result.swapped_in == 800_000
        assert world.reward_balance(h["a"]) == 266_666

    @pytest.mark.asyncio
    async def test_no_upkeep_swap_when_balance_healthy(self, build_keeper):
        world, _ = standard_world()
        swap = SimulatedSwapAdapter(world.ledger)
        orch = build_keeper(world, swap=swap)
        await orch.start()
        result = await orch.run_cycle()
        assert result.upkeep_in == 0
        assert [q.output_mint for q in swap.quotes] == [str(world.reward_mint)]

    @pytest.mark.asyncio
    async def test_cycle_refused_below_minimum_balance(self, build_keeper, metrics):
        world, _ = standard_world()
        orch = build_keeper(world, metrics=metrics)
        await orch.start()
        world.ledger.set_lamports(world.keeper.pubkey(), 10_000_000)

        result = await orch.run_cycle()
        assert result.failure_kind == "low_balance"
        assert world.ledger.submitted == []
        assert world.program.harvests == []
        assert metrics.registry.get_sample_value("keeper_sol_balance_lamports") == 10_000_000
