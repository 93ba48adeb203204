"""
Tests for runtime state persistence and failure backoff.
"""

import json

import pytest

from keeper.orchestrator.backoff import BackoffConfig, FailureBackoff
from keeper.state.cycle_state import PendingSubmission, RuntimeCycleState
from keeper.state.state_store import AtomicStateStore, StateStore


class TestStateStore:
    def test_missing_file_loads_empty(self, tmp_path):
        assert StateStore(tmp_path / "state.json").load() == {}

    def test_save_and_load(self, tmp_path):
        store = StateStore(tmp_path / "nested" / "state.json")
        store.save({"unswapped_amount": 5})
        assert store.load() == {"unswapped_amount": 5}
        assert not store.tmp.exists()

    def test_corrupt_file_loads_empty(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        assert StateStore(path).load() == {}

    def test_failed_save_raises(self, tmp_path):
        store = StateStore(tmp_path / "state.json")
        store.path.mkdir()  # os.replace onto a directory fails
        with pytest.raises(OSError):
            store.save({"a": 1})

    @pytest.mark.asyncio
    async def test_atomic_store(self, tmp_path):
        store = AtomicStateStore(tmp_path / "state.json")
        await store.save({"cycle_count": 3})
        assert await store.load() == {"cycle_count": 3}
        assert json.loads(store.path.read_text()) == {"cycle_count": 3}


class TestRuntimeCycleState:
    def test_roundtrip_with_pending(self):
        rt = RuntimeCycleState(
            unswapped_amount=10,
            pending_swap=PendingSubmission("sig", 10, 1.0, expected_out=5),
        )
        restored = RuntimeCycleState.from_dict(json.loads(json.dumps(rt.to_dict())))
        assert restored == rt
        assert restored.has_pending()
        assert restored.has_carry_over()

    def test_unknown_keys_ignored(self):
        rt = RuntimeCycleState.from_dict({"cycle_count": "4", "legacy_field": 1})
        assert rt.cycle_count == 4
        assert not rt.has_pending()
        assert not rt.has_carry_over()

    def test_pending_without_signature_dropped(self):
        assert PendingSubmission.from_dict({"amount": 5}) is None
        assert PendingSubmission.from_dict(None) is None

    def test_roundtrip_with_plan_and_owner_share(self):
        rt = RuntimeCycleState(
            owner_share_due=7,
            undistributed_amount=300,
            distribution_plan=[{"recipient": "A", "amount": 200}, {"recipient": "B", "amount": 100}],
            pending_distribution=PendingSubmission("sig", 200, 1.0, recipients=1),
        )
        restored = RuntimeCycleState.from_dict(json.loads(json.dumps(rt.to_dict())))
        assert restored == rt
        assert restored.plan_total == 300
        assert restored.pending_distribution.recipients == 1

    def test_malformed_plan_entries_dropped(self):
        rt = RuntimeCycleState.from_dict({
            "distribution_plan": [{"recipient": "A", "amount": "5"}, {"amount": 3}, {"recipient": "B", "amount": 0}, "x"],
        })
        assert rt.distribution_plan == [{"recipient": "A", "amount": 5}]

    def test_dust_is_not_carry_over(self):
        assert not RuntimeCycleState(undistributed_amount=1).has_carry_over(1_000)
        assert RuntimeCycleState(undistributed_amount=1_000).has_carry_over(1_000)
        assert RuntimeCycleState(undistributed_amount=1, owner_share_due=1).has_carry_over(1_000)
        assert RuntimeCycleState(distribution_plan=[{"recipient": "A", "amount": 1}]).has_carry_over(1_000)


class TestFailureBackoff:
    def test_delay_doubles_and_caps(self):
        b = FailureBackoff(BackoffConfig(interval_sec=10, max_backoff_sec=100, alert_threshold=3))
        assert b.next_delay() == 10
        delays = []
        for _ in range(5):
            b.record_failure("connectivity", "down")
            delays.append(b.next_delay())
        assert delays == [20, 40, 80, 100, 100]

    def test_threshold_reported_once(self):
        b = FailureBackoff(BackoffConfig(alert_threshold=3))
        crossings = [b.record_failure("connectivity", "down") for _ in range(5)]
        assert crossings == [False, False, True, False, False]
        assert b.alerting

    def test_success_resets(self):
        events = []
        b = FailureBackoff(BackoffConfig(), failures=2, log_event=lambda e, **kw: events.append(e))
        assert b.record_success() == 2
        assert b.failures == 0
        assert b.next_delay() == b.config.interval_sec
        assert events == ["cycle_failure_reset"]

    def test_huge_streak_does_not_overflow(self):
        b = FailureBackoff(BackoffConfig(interval_sec=1, max_backoff_sec=60), failures=10_000)
        assert b.next_delay() == 60
        assert b.get_state()["failures"] == 10_000
