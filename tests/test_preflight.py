"""
Tests for PreflightChecker and the signed preflight artifact.
"""

import json

import pytest
from solders.keypair import Keypair

from fakes import FakeClock, VaultWorld, tax_config_account
from keeper.preflight.preflight import (
    ARTIFACT_NAME,
    CHECK_ORDER,
    CheckStatus,
    PreflightArtifact,
    PreflightChecker,
    PreflightConfig,
)


def make_checker(world, tmp_path, state=None, **cfg):
    store = world.write_deployment_state(tmp_path, **(state or {}))
    config = PreflightConfig(verification_dir=str(tmp_path / "verification"), **cfg)
    return PreflightChecker(world.ledger, store, config, clock=FakeClock()), store


def statuses(artifact):
    return {c.name: c.status for c in artifact.checks}


class TestPreflightChecks:
    @pytest.mark.asyncio
    async def test_all_checks_pass(self, tmp_path):
        world = VaultWorld()
        checker, _ = make_checker(world, tmp_path)
        artifact = await checker.run()
        assert artifact.passed
        assert [c.name for c in artifact.checks] == list(CHECK_ORDER)
        assert artifact.signer == str(world.keeper.pubkey())
        assert artifact.verify()

    @pytest.mark.asyncio
    async def test_unreachable_ledger(self, tmp_path):
        world = VaultWorld()
        checker, _ = make_checker(world, tmp_path)
        world.ledger.unreachable = True
        artifact = await checker.run()
        assert artifact.overall is CheckStatus.FAIL
        assert statuses(artifact) == {
            "connectivity": CheckStatus.FAIL,
            "credentials": CheckStatus.PASS,
            "program": CheckStatus.SKIPPED,
            "configuration": CheckStatus.SKIPPED,
            "balance": CheckStatus.SKIPPED,
        }
        # still signed; credentials were valid
        assert artifact.verify()

    @pytest.mark.asyncio
    async def test_missing_keypair(self, tmp_path):
        world = VaultWorld()
        checker, store = make_checker(world, tmp_path)
        store.keypair_path("keeper").unlink()
        artifact = await checker.run()
        s = statuses(artifact)
        assert s["credentials"] is CheckStatus.FAIL
        assert s["balance"] is CheckStatus.SKIPPED
        assert artifact.signature is None
        assert not artifact.verify()

    @pytest.mark.asyncio
    async def test_keypair_not_the_configured_keeper(self, tmp_path):
        world = VaultWorld()
        checker, store = make_checker(world, tmp_path)
        store.save_keypair("keeper", Keypair(), overwrite=True)
        artifact = await checker.run()
        assert artifact.check("credentials").status is CheckStatus.FAIL
        assert "not the configured keeper" in artifact.check("credentials").detail

    @pytest.mark.asyncio
    async def test_secret_in_deployment_state(self, tmp_path):
        world = VaultWorld()
        store = world.write_deployment_state(tmp_path, keeper_private_key=list(bytes(world.keeper)))
        checker = PreflightChecker(world.ledger, store, PreflightConfig(verification_dir=str(tmp_path / "v")))
        artifact = await checker.run()
        assert artifact.check("credentials").status is CheckStatus.FAIL
        assert "keeper_private_key" in artifact.check("credentials").detail

    @pytest.mark.asyncio
    async def test_program_not_deployed(self, tmp_path):
        world = VaultWorld()
        checker, _ = make_checker(world, tmp_path)
        world.ledger.remove_account(world.program_id)
        artifact = await checker.run()
        assert artifact.check("program").status is CheckStatus.FAIL
        assert artifact.check("configuration").status is CheckStatus.PASS

    @pytest.mark.asyncio
    async def test_program_not_executable(self, tmp_path):
        world = VaultWorld()
        checker, _ = make_checker(world, tmp_path)
        world.ledger.set_account(world.program_id, b"")
        artifact = await checker.run()
        assert "not executable" in artifact.check("program").detail

    @pytest.mark.asyncio
    async def test_vault_not_initialized(self, tmp_path):
        world = VaultWorld()
        checker, _ = make_checker(world, tmp_path)
        world.ledger.set_account(
            world.addresses.tax_config,
            tax_config_account(world.keeper.pubkey(), world.token_mint, world.keeper.pubkey(), initialized=False),
            owner=world.program_id,
        )
        artifact = await checker.run()
        assert artifact.check("configuration").status is CheckStatus.FAIL

    @pytest.mark.asyncio
    async def test_mint_without_fee_extension(self, tmp_path):
        world = VaultWorld()
        checker, _ = make_checker(world, tmp_path)
        world.ledger.set_account(world.token_mint, bytes(82))
        artifact = await checker.run()
        assert artifact.check("configuration").status is CheckStatus.FAIL

    @pytest.mark.asyncio
    async def test_low_balance(self, tmp_path):
        world = VaultWorld(keeper_lamports=1_000)
        checker, _ = make_checker(world, tmp_path, min_operating_balance=50_000_000)
        artifact = await checker.run()
        assert artifact.check("balance").status is CheckStatus.FAIL
        assert not artifact.passed

    @pytest.mark.asyncio
    async def test_recorded_wallets_match_tax_config(self, tmp_path):
        world = VaultWorld()
        keeper = str(world.keeper.pubkey())
        checker, _ = make_checker(world, tmp_path, state={"owner_wallet": keeper, "treasury_wallet": keeper})
        artifact = await checker.run()
        assert artifact.check("configuration").status is CheckStatus.PASS

    @pytest.mark.asyncio
    async def test_recorded_owner_differs_from_tax_config(self, tmp_path):
        world = VaultWorld()
        checker, _ = make_checker(world, tmp_path, state={"owner_wallet": str(Keypair().pubkey())})
        artifact = await checker.run()
        assert artifact.check("configuration").status is CheckStatus.FAIL
        assert "owner_wallet" in artifact.check("configuration").detail


class TestPreflightArtifact:
    @pytest.mark.asyncio
    async def test_written_and_readable(self, tmp_path):
        world = VaultWorld()
        checker, _ = make_checker(world, tmp_path)
        artifact = await checker.run()
        path = tmp_path / "verification" / ARTIFACT_NAME
        assert checker.artifact_path == path
        on_disk = json.loads(path.read_text())
        assert on_disk["overall"] == "pass"
        loaded = PreflightArtifact.read(path)
        assert loaded.to_dict() == artifact.to_dict()
        assert loaded.verify()

    @pytest.mark.asyncio
    async def test_tampering_breaks_signature(self, tmp_path):
        world = VaultWorld(keeper_lamports=1)
        checker, _ = make_checker(world, tmp_path)
        artifact = await checker.run()
        data = artifact.to_dict()
        data["overall"] = "pass"
        assert not PreflightArtifact.from_dict(data).verify()

    @pytest.mark.asyncio
    async def test_shared_copy(self, tmp_path):
        world = VaultWorld()
        shared = tmp_path / "shared"
        checker, _ = make_checker(world, tmp_path, shared_verification_dir=str(shared))
        await checker.run()
        assert (shared / ARTIFACT_NAME).exists()

    def test_copy_without_artifact(self, tmp_path):
        world = VaultWorld()
        checker, _ = make_checker(world, tmp_path)
        with pytest.raises(FileNotFoundError):
            checker.copy_artifact(tmp_path / "elsewhere")
