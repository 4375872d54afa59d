"""
CLI Tests
=========

Run with: pytest tests/ -v
"""

import sys
import json
from pathlib import Path

import pytest
from solders.keypair import Keypair

sys.path.insert(0, str(Path(__file__).parent.parent))

import swarm_cli
from config import ConfigManager
from exchange import DryRunExchange, DRY_RUN_LEDGER_FILE
from swarm.pool import WalletPoolStore, VOLUME_POOL, MARKET_MAKER_POOL
from utils import sol_to_lamports

PASSWORD = "cli_password_123"


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Initialized config with a generated main wallet; logs land in tmp_path."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv(swarm_cli.PASSWORD_ENV, PASSWORD)
    config_path = tmp_path / "bot_config.yaml"
    data_dir = tmp_path / "data"
    swarm_cli.main(["--config", str(config_path), "--data-dir", str(data_dir), "init", "--generate"])
    return config_path, data_dir


def run_cli(config_path, *argv):
    swarm_cli.main(["--config", str(config_path), "--dry-run", *argv])


def main_address(config_path):
    config = ConfigManager(config_path).load_config(PASSWORD)
    return str(Keypair.from_base58_string(config.encrypted_private_key).pubkey())


class TestParser:
    def test_global_options(self):
        args = swarm_cli.build_parser().parse_args(["--dry-run", "--data-dir", "d", "fund", "market_maker"])
        assert args.dry_run is True
        assert args.data_dir == "d"
        assert args.pool == "market_maker"

    def test_collect_defaults_to_all_pools(self):
        args = swarm_cli.build_parser().parse_args(["collect"])
        assert args.pools == []

    def test_unknown_variant_rejected(self):
        with pytest.raises(SystemExit):
            swarm_cli.build_parser().parse_args(["run", "arbitrage"])


class TestDryRunCommands:
    def test_init_writes_encrypted_config(self, workspace):
        config_path, data_dir = workspace
        raw = ConfigManager(config_path).read_raw_config()
        assert raw["data_dir"] == str(data_dir)
        assert raw["encrypted_private_key"]
        assert raw["salt"]

    def test_funded_wallet_secrets_encrypted(self, workspace):
        config_path, data_dir = workspace
        run_cli(config_path, "fund", MARKET_MAKER_POOL)

        store = WalletPoolStore(str(data_dir))
        data = json.loads(store.path_for(MARKET_MAKER_POOL).read_text())
        assert data["encrypted"] is True
        assert store.count(MARKET_MAKER_POOL) == 5

        records = WalletPoolStore(str(data_dir), password=PASSWORD).load(MARKET_MAKER_POOL)
        assert [r.public_id for r in records] == [w["public_id"] for w in data["wallets"]]
        for record, stored in zip(records, data["wallets"]):
            assert record.secret != stored["secret"]

        # status counts wallets without the password
        run_cli(config_path, "status")

    def test_ledger_carries_over_between_commands(self, workspace):
        config_path, data_dir = workspace
        ledger_path = data_dir / DRY_RUN_LEDGER_FILE
        main = main_address(config_path)

        run_cli(config_path, "fund", MARKET_MAKER_POOL)
        records = WalletPoolStore(str(data_dir), password=PASSWORD).load(MARKET_MAKER_POOL)
        after_first = DryRunExchange(state_path=ledger_path)
        for record in records:
            assert after_first.balances[record.public_id] == record.allocated_amount
        main_after_first = after_first.balances[main]
        assert main_after_first < sol_to_lamports(swarm_cli.DRY_RUN_MAIN_BALANCE_SOL)

        run_cli(config_path, "fund", VOLUME_POOL)
        after_second = DryRunExchange(state_path=ledger_path)
        # Main wallet is not topped up again, and the first pool keeps its funds
        assert after_second.balances[main] < main_after_first
        for record in records:
            assert after_second.balances[record.public_id] == record.allocated_amount
