"""Shared fixtures for the swarm bot test-suite."""

import sys
from pathlib import Path
from datetime import datetime, timedelta

import pytest

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from solders.keypair import Keypair

from config import Config
from exchange import DryRunExchange
from swarm.gate import DistributionGate
from swarm.pool import WalletPoolStore

MINT = "4k3Dyjzvzp8eMZWUXbBCjEvwSkkk59S5iCNLY3QrkX6R"


class FakeClock:
    """Controllable replacement for datetime.now."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def config(tmp_path):
    """Config with every delay shrunk so engines run instantly."""
    return Config(
        token_mint=MINT,
        data_dir=str(tmp_path / "data"),
        log_file=str(tmp_path / "logs" / "bot.log"),
        retry_delay_seconds=0,
        buy_interval_min=0,
        buy_interval_max=0,
        sell_interval_min=0,
        sell_interval_max=0,
        distribute_interval_min=0.01,
        distribute_interval_max=0.01,
        collect_stagger_seconds=0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def exchange():
    return DryRunExchange()


@pytest.fixture
def main_wallet(exchange):
    keypair = Keypair()
    return keypair


@pytest.fixture
def pool_store(config):
    return WalletPoolStore(config.data_dir)


@pytest.fixture
def gate(config, clock):
    return DistributionGate(config.data_dir, config.distribute_to_run_delay_min, clock=clock)
