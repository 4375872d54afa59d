"""
Volume Bot Tests
================

Run with: pytest tests/ -v
"""

import sys
import time
import asyncio
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from logging_utils import MetricsCollector
from swarm.allocator import WalletAllocator
from swarm.pool import WalletRecord, VOLUME_POOL
from swarm.retry import CancellationToken
from swarm.volume import VolumeBot, RoundProgress

SOL = 1_000_000_000


@pytest.fixture
def make_bot(exchange, pool_store, gate, config, main_wallet):
    def _make(**kwargs):
        metrics = MetricsCollector()
        allocator = WalletAllocator(exchange, pool_store, gate, config, metrics)
        options = {"distribution_retry_seconds": 0.01, "max_attempts": 2}
        options.update(kwargs)
        return VolumeBot(exchange, allocator, pool_store, config, main_wallet, metrics, **options)
    return _make


async def run_until(bot, token, condition, timeout=5.0, sample=None):
    """Run the bot until ``condition()`` holds, then cancel and wait."""
    task = asyncio.create_task(bot.run(token))
    deadline = time.monotonic() + timeout
    while not condition() and time.monotonic() < deadline:
        if sample:
            sample()
        await asyncio.sleep(0.005)
    token.cancel()
    await asyncio.wait_for(task, timeout)


class TestRoundProgress:
    def test_missing_by_stage(self):
        progress = RoundProgress(1, ["a", "b"])
        progress.mark("started", "a")
        progress.mark("started", "b")
        progress.mark("bought_once", "a")

        missing = progress.missing()
        assert missing["started"] == []
        assert missing["bought_once"] == ["b"]
        assert missing["swept"] == ["a", "b"]
        assert progress.complete is False


class TestVolumeBot:
    def test_full_round(self, make_bot, exchange, main_wallet, config, pool_store):
        config.distribute_wallet_num = 3
        config.sol_amount_to_distribute = 0.3
        exchange.airdrop(str(main_wallet.pubkey()), SOL // 2)
        bot = make_bot()
        token = CancellationToken()

        asyncio.run(run_until(bot, token, lambda: bool(bot.rounds) and bot.rounds[0].complete))

        first = bot.rounds[0]
        assert first.complete
        remaining = {r.public_id for r in pool_store.load(VOLUME_POOL)}
        assert not remaining & set(first.wallets)

        for public_id in first.wallets:
            buys = [t for t in exchange.actions("buy") if t.signer == public_id]
            sells = [t for t in exchange.actions("sell") if t.signer == public_id]
            assert len(buys) == 2
            assert len(sells) == 1
            assert exchange.balances.get(public_id, 0) == 0

        assert bot.metrics.count("sweep", success=True) >= 3

    def test_allocation_failure_sleeps_and_retries(self, make_bot, main_wallet):
        bot = make_bot(distribution_retry_seconds=30)
        token = CancellationToken()

        async def scenario():
            task = asyncio.create_task(bot.run(token))
            await asyncio.sleep(0.05)
            token.cancel()
            await asyncio.wait_for(task, 5)

        started = time.monotonic()
        asyncio.run(scenario())

        assert bot.rounds == []
        assert bot.metrics.count("fund", success=False) == 1
        assert time.monotonic() - started < 5

    def test_low_balance_wallet_exhausted(self, make_bot, exchange, config):
        bot = make_bot()
        record = WalletRecord.generate(1_000_000)
        exchange.airdrop(record.public_id, config.volume_fee_reserve_lamports)
        progress = RoundProgress(1, [record.public_id])

        asyncio.run(bot._wallet_workflow(record, 0, 1, progress, CancellationToken()))

        assert bot.metrics.count("exhausted") == 1
        assert exchange.actions("buy") == []

    def test_sell_failure_leaves_wallet_in_pool(self, make_bot, exchange, pool_store):
        bot = make_bot()
        record = WalletRecord.generate(50_000_000)
        pool_store.append(VOLUME_POOL, [record])
        exchange.airdrop(record.public_id, 50_000_000)
        exchange.fail_always.add("sell")
        progress = RoundProgress(1, [record.public_id])

        asyncio.run(bot._wallet_workflow(record, 0, 1, progress, CancellationToken()))

        assert record.public_id in progress.stages["bought_twice"]
        assert record.public_id not in progress.stages["sold"]
        assert pool_store.count(VOLUME_POOL) == 1
        assert bot.metrics.count("sell", success=False) == 1

    def test_cancelled_before_start_leaves_wallet(self, make_bot, exchange, pool_store):
        bot = make_bot()
        record = WalletRecord.generate(50_000_000)
        pool_store.append(VOLUME_POOL, [record])
        exchange.airdrop(record.public_id, 50_000_000)
        token = CancellationToken()

        async def scenario():
            token.cancel()
            await bot._wallet_workflow(record, 0, 1, RoundProgress(1, [record.public_id]), token)

        asyncio.run(scenario())
        assert exchange.actions() == []
        assert pool_store.count(VOLUME_POOL) == 1

    def test_unbounded_rounds_overlap(self, make_bot, exchange, main_wallet, config):
        config.distribute_wallet_num = 2
        config.sol_amount_to_distribute = 0.1
        config.buy_interval_min = config.buy_interval_max = 0.1
        exchange.airdrop(str(main_wallet.pubkey()), 10 * SOL)
        bot = make_bot()
        token = CancellationToken()
        peak = [0]

        def sample():
            peak[0] = max(peak[0], len(bot._inflight))

        asyncio.run(run_until(bot, token, lambda: len(bot.rounds) >= 4, sample=sample))
        assert peak[0] > 1

    def test_bounded_rounds_wait(self, make_bot, exchange, main_wallet, config):
        config.distribute_wallet_num = 2
        config.sol_amount_to_distribute = 0.1
        config.buy_interval_min = config.buy_interval_max = 0.05
        config.round_overlap = "bounded"
        config.max_inflight_rounds = 1
        exchange.airdrop(str(main_wallet.pubkey()), 10 * SOL)
        bot = make_bot()
        token = CancellationToken()
        peak = [0]

        def sample():
            peak[0] = max(peak[0], len(bot._inflight))

        asyncio.run(run_until(bot, token, lambda: len(bot.rounds) >= 3, sample=sample))
        assert peak[0] <= 1
        assert bot.rounds[0].complete
        assert bot.rounds[1].complete
