"""
Tests for Settings, ConfigValidator and ConfigStore.
"""

import dataclasses
import json
import logging

import pytest
from solders.keypair import Keypair

from keeper.config.config import Settings
from keeper.config.config_store import ConfigStore, parse_pubkey
from keeper.config.config_validator import ConfigValidator, ValidationIssue, ValidationSeverity, validate_and_log
from keeper.errors import ConfigValidationError, CredentialError, KeypairExistsError
from keeper.ledger.types import ConfirmationOutcome, ConfirmationResult


class TestSettings:
    def test_defaults(self):
        cfg = Settings.load()
        assert cfg.network == "devnet"
        assert cfg.harvest_threshold == 500_000
        assert cfg.min_hold_amount == 100_000
        assert cfg.alert_failure_threshold == 3
        assert cfg.tick_interval_sec == 300.0

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("KEEPER_HARVEST_THRESHOLD", "750000")
        monkeypatch.setenv("KEEPER_SLIPPAGE_BPS", "50")
        monkeypatch.setenv("KEEPER_ALERT_ENABLED", "no")
        cfg = Settings.load()
        assert cfg.harvest_threshold == 750_000
        assert cfg.slippage_bps == 50
        assert cfg.alert_enabled is False

    def test_bad_integer_is_config_error(self, monkeypatch):
        monkeypatch.setenv("KEEPER_HARVEST_THRESHOLD", "lots")
        with pytest.raises(ConfigValidationError):
            Settings.load()

    def test_invalid_network(self, monkeypatch):
        monkeypatch.setenv("KEEPER_NETWORK", "moon")
        with pytest.raises(ConfigValidationError):
            Settings.load()

    def test_backoff_shorter_than_tick_rejected(self, monkeypatch):
        monkeypatch.setenv("KEEPER_TICK_INTERVAL_SEC", "600")
        monkeypatch.setenv("KEEPER_MAX_BACKOFF_SEC", "60")
        with pytest.raises(ConfigValidationError):
            Settings.load()

    def test_owner_share_and_upkeep_settings(self, monkeypatch):
        monkeypatch.setenv("KEEPER_OWNER_SHARE_BPS", "2000")
        monkeypatch.setenv("KEEPER_SOL_UPKEEP_SHARE_BPS", "1500")
        cfg = Settings.load()
        assert cfg.owner_share_bps == 2_000
        assert cfg.sol_upkeep_share_bps == 1_500
        assert cfg.min_distribution_amount == 1_000
        assert cfg.sol_upkeep_below_lamports == 100_000_000

    @pytest.mark.parametrize("name,value", [
        ("KEEPER_OWNER_SHARE_BPS", "10001"),
        ("KEEPER_SOL_UPKEEP_SHARE_BPS", "-1"),
        ("KEEPER_MIN_DISTRIBUTION_AMOUNT", "-5"),
    ])
    def test_out_of_range_split_rejected(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(ConfigValidationError):
            Settings.load()

    def test_dump_masks_webhook(self):
        cfg = dataclasses.replace(Settings.load(), alert_webhook_url="https://hooks.example/secret")
        assert cfg.dump()["alert_webhook_url"] == "***"


class TestConfigValidator:
    def test_defaults_are_valid(self):
        result = ConfigValidator().validate(Settings.load())
        assert result.valid
        assert not result.has_errors()

    def test_missing_webhook_is_warning(self):
        result = ConfigValidator().validate(Settings.load())
        fields = [i.field for i in result.get_warnings()]
        assert "alert_webhook_url" in fields

    def test_out_of_range_is_error(self):
        cfg = dataclasses.replace(Settings.load(), distribution_batch_size=500)
        result = ConfigValidator().validate(cfg)
        assert not result.valid
        assert any(i.field == "distribution_batch_size" for i in result.get_errors())

    def test_processed_on_mainnet_is_error(self):
        cfg = dataclasses.replace(Settings.load(), network="mainnet-beta", commitment="processed")
        assert not ConfigValidator().validate(cfg).valid

    def test_unknown_webhook_type(self):
        cfg = dataclasses.replace(Settings.load(), alert_webhook_type="carrier-pigeon")
        assert not ConfigValidator().validate(cfg).valid

    def test_custom_validator(self):
        validator = ConfigValidator()
        validator.register_validator(lambda cfg: [
            ValidationIssue(field="rpc_url", message="no", severity=ValidationSeverity.ERROR)
        ])
        assert not validator.validate(Settings.load()).valid

    def test_validate_and_log(self, caplog):
        cfg = dataclasses.replace(Settings.load(), slippage_bps=0)
        log = logging.getLogger("test-validator")
        with caplog.at_level(logging.INFO, logger="test-validator"):
            assert validate_and_log(cfg, log) is False
        assert "CONFIG ERROR" in caplog.text


def _write_state(tmp_path, **fields):
    path = tmp_path / "deployment-state.json"
    path.write_text(json.dumps(fields))
    return path


class TestConfigStore:
    def test_load_and_typed_getters(self, tmp_path):
        program, mint = Keypair().pubkey(), Keypair().pubkey()
        path = _write_state(tmp_path, vault_program_id=str(program), token_mint=str(mint))
        store = ConfigStore(path, tmp_path / "keypairs")
        snap = store.load()
        assert snap["token_mint"] == str(mint)
        assert store.vault_program_id == program
        assert store.token_mint == mint
        assert store.keeper_wallet is None
        assert store.owner_wallet is None
        assert store.vault_initialized is False

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigValidationError):
            ConfigStore(tmp_path / "nope.json").load()

    def test_missing_required_field(self, tmp_path):
        path = _write_state(tmp_path, vault_program_id=str(Keypair().pubkey()))
        with pytest.raises(ConfigValidationError) as exc:
            ConfigStore(path).load()
        assert "token_mint" in str(exc.value)

    def test_invalid_address(self, tmp_path):
        path = _write_state(tmp_path, vault_program_id="not-an-address", token_mint=str(Keypair().pubkey()))
        with pytest.raises(ConfigValidationError):
            ConfigStore(path).load()

    def test_snapshot_is_read_only(self, tmp_path):
        path = _write_state(tmp_path, vault_program_id=str(Keypair().pubkey()), token_mint=str(Keypair().pubkey()))
        store = ConfigStore(path)
        snap = store.load()
        with pytest.raises(TypeError):
            snap["token_mint"] = "x"

    def test_update_persists_before_returning(self, tmp_path):
        path = _write_state(tmp_path, vault_program_id=str(Keypair().pubkey()), token_mint=str(Keypair().pubkey()))
        store = ConfigStore(path)
        store.load()
        old = store.snapshot()
        store.update({"vault_initialized": True})
        assert json.loads(path.read_text())["vault_initialized"] is True
        assert "vault_initialized" not in old
        assert store.vault_initialized is True

    def test_unconfirmed_signature_rejected(self, tmp_path):
        path = _write_state(tmp_path, vault_program_id=str(Keypair().pubkey()), token_mint=str(Keypair().pubkey()))
        store = ConfigStore(path)
        store.load()
        with pytest.raises(ValueError):
            store.update({"init_signature": "abc"})
        failed = ConfirmationResult("sig", ConfirmationOutcome.FAILED, error="boom")
        with pytest.raises(ValueError):
            store.record_signature("init_signature", failed)
        assert store.get("init_signature") is None

        store.record_signature("init_signature", ConfirmationResult("sig", ConfirmationOutcome.CONFIRMED, 5))
        assert store.get("init_signature") == "sig"

    def test_secret_fields_detected(self, tmp_path):
        kp = Keypair()
        path = _write_state(
            tmp_path,
            vault_program_id=str(Keypair().pubkey()),
            token_mint=str(Keypair().pubkey()),
            keeper_secret=list(bytes(kp)),
            leaked=str(kp),
        )
        store = ConfigStore(path)
        store.load()
        assert store.secret_fields() == ["keeper_secret", "leaked"]

    def test_keypair_roundtrip_and_overwrite_guard(self, tmp_path):
        store = ConfigStore(tmp_path / "state.json", tmp_path / "keypairs")
        kp = Keypair()
        path = store.save_keypair("keeper", kp)
        assert path.name == "keeper-keypair.json"
        assert store.load_keypair("keeper").pubkey() == kp.pubkey()
        with pytest.raises(KeypairExistsError):
            store.save_keypair("keeper", Keypair())
        assert store.load_keypair("keeper").pubkey() == kp.pubkey()

    def test_missing_or_corrupt_keypair(self, tmp_path):
        store = ConfigStore(tmp_path / "state.json", tmp_path / "keypairs")
        with pytest.raises(CredentialError):
            store.load_keypair("keeper")
        (tmp_path / "keypairs").mkdir()
        (tmp_path / "keypairs" / "keeper-keypair.json").write_text("not json")
        with pytest.raises(CredentialError):
            store.load_keypair("keeper")

    def test_invalid_keypair_name(self, tmp_path):
        with pytest.raises(CredentialError):
            ConfigStore(tmp_path / "s.json").keypair_path("../etc")

    def test_parse_pubkey(self):
        kp = Keypair().pubkey()
        assert parse_pubkey(str(kp), "x") == kp
        assert parse_pubkey(kp, "x") is kp
        with pytest.raises(ConfigValidationError):
            parse_pubkey("", "x")
