"""
Configuration Tests
===================

Run with: pytest tests/ -v
"""

import os
import sys
import stat
from pathlib import Path

import pytest
import yaml
from cryptography.fernet import InvalidToken
from solders.keypair import Keypair

sys.path.insert(0, str(Path(__file__).parent.parent))

from config import Config, ConfigManager, DEFAULT_CONFIG
from swarm.extension import ConfigExtensionSource, ExtensionMonitor


@pytest.fixture
def manager(tmp_path):
    return ConfigManager(tmp_path / "bot_config.yaml")


@pytest.fixture
def main_key():
    return str(Keypair())


class TestConfig:
    """Tests for configuration values."""

    def test_default_config(self):
        config = Config()
        assert config.distribute_to_run_delay_min == 5
        assert config.distribute_variance_percent == 20.0
        assert config.token_account_rent_lamports == 2_039_280
        assert config.mint_rent_lamports == 1_461_600
        assert config.retry_delay_seconds == 2.0
        assert config.round_overlap == "unbounded"
        assert config.dry_run is False

    def test_from_dict_ignores_unknown_keys(self):
        config = Config.from_dict({"distribute_wallet_num": 7, "unknown_key": 1})
        assert config.distribute_wallet_num == 7

    def test_to_dict_round_trip(self):
        config = Config(token_mint="MintAddr", encrypted_private_key="secret", additional_time_min=3)
        data = config.to_dict()
        assert data["encrypted_private_key"] == "secret"
        assert Config.from_dict(data) == config

    def test_template_matches_defaults(self):
        assert Config.from_dict(yaml.safe_load(DEFAULT_CONFIG)) == Config()

    @pytest.mark.parametrize("updates", [
        {"distribute_wallet_num": 0},
        {"distribute_variance_percent": 100},
        {"buy_lower_percent": 70, "buy_upper_percent": 60},
        {"buy_interval_period_unit_sec": 0},
        {"round_overlap": "sometimes"},
        {"gather_to_other_address": True, "gather_address": None},
    ])
    def test_validate_rejects(self, updates):
        config = Config(**updates)
        with pytest.raises(ValueError):
            config.validate()

    def test_validate_accepts_defaults(self):
        Config().validate()


class TestConfigManager:
    """Tests for the encrypted configuration file."""

    def test_create_and_load(self, manager, main_key):
        manager.create_config({"token_mint": "MintAddr"}, main_key, "test_password_123")

        raw = manager.read_raw_config()
        assert raw["encrypted_private_key"] != main_key
        assert main_key not in manager.config_path.read_text()

        config = manager.load_config("test_password_123")
        assert config.encrypted_private_key == main_key
        assert config.token_mint == "MintAddr"

    def test_file_permissions(self, manager, main_key):
        manager.create_config({}, main_key, "test_password_123")
        if os.name != 'nt':
            mode = manager.config_path.stat().st_mode
            assert stat.S_IMODE(mode) == 0o600

    def test_wrong_password(self, manager, main_key):
        manager.create_config({}, main_key, "test_password_123")
        with pytest.raises(InvalidToken):
            manager.load_config("wrong_password")

    def test_invalid_private_key(self, manager):
        with pytest.raises(ValueError):
            manager.create_config({}, "0x" + "a" * 64, "test_password_123")

    def test_load_without_password_keeps_ciphertext(self, manager, main_key):
        manager.create_config({}, main_key, "test_password_123")
        config = manager.load_config()
        assert config.encrypted_private_key != main_key

    def test_missing_file(self, manager):
        with pytest.raises(FileNotFoundError):
            manager.read_raw_config()

    def test_update_keeps_key(self, manager, main_key):
        manager.create_config({}, main_key, "test_password_123")
        manager.update_config({"sell_token_percent": 35.0})

        config = manager.load_config("test_password_123")
        assert config.sell_token_percent == 35.0
        assert config.encrypted_private_key == main_key


class TestConfigExtensionSource:
    def test_take_resets_file(self, manager, main_key):
        manager.create_config({"buy_interval_period_unit_sec": 30}, main_key, "test_password_123")
        source = ConfigExtensionSource(manager)
        source.set(2)

        monitor = ExtensionMonitor(source, unit_seconds=30)
        assert monitor.check_and_apply_extension() == 4
        assert manager.read_raw_config()["additional_time_min"] == 0
        assert monitor.check_and_apply_extension() == 0

    def test_missing_config_yields_nothing(self, manager):
        monitor = ExtensionMonitor(ConfigExtensionSource(manager), unit_seconds=30)
        assert monitor.check_and_apply_extension() == 0
