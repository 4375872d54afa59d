"""
Market Maker
============
Two engines share the ``market_maker`` wallet pool.

Buy side: spreads each wallet's balance over a fixed number of iterations,
buying a declining share every ``buy_interval_period_unit_sec``. The run can
be lengthened while it is going through the extension monitor.

Sell side: every iteration a random subset of the wallets still holding
tokens sells a random percentage of their balance, until nothing is left or
the run is stopped.
"""

import math
import random
import asyncio
from typing import List, Optional, Set, Tuple

from solders.keypair import Keypair

from config import Config
from exchange import ExchangeAdapter
from logging_utils import MetricsCollector
from utils import logger, format_sol, format_address, format_duration, ceil_div_seconds, signed_jitter, jittered_interval
from swarm.engine import TradingEngine
from swarm.extension import ExtensionMonitor, IterationBudget
from swarm.pool import WalletPoolStore, MARKET_MAKER_POOL
from swarm.retry import CancellationToken

BUY_INTERVAL_JITTER_PERCENT = 30

Wallet = Tuple[str, Keypair]


def iteration_count(total_period_min: float, unit_seconds: float) -> int:
    return ceil_div_seconds(total_period_min * 60, unit_seconds)


def concurrency_subset_size(holders: int, percent: float, delta: float) -> int:
    """How many of ``holders`` wallets sell this iteration: 1..holders."""
    if holders <= 0:
        return 0
    size = math.floor(holders * (percent + signed_jitter(delta)) / 100)
    return min(holders, max(1, size))


def sell_percent(percent: float, delta: float) -> float:
    return min(100.0, max(1.0, percent + signed_jitter(delta)))


def _load_wallets(pool_store: WalletPoolStore) -> List[Wallet]:
    # A read failure raises PersistenceError and aborts the run
    return [(r.public_id, r.keypair()) for r in pool_store.load(MARKET_MAKER_POOL)]


class MarketMakerBuyEngine(TradingEngine):
    name = "MARKET MAKER"

    def __init__(
        self,
        exchange: ExchangeAdapter,
        pool_store: WalletPoolStore,
        config: Config,
        monitor: ExtensionMonitor,
        metrics: Optional[MetricsCollector] = None,
        **kwargs,
    ):
        super().__init__(exchange, config, metrics, **kwargs)
        self.pool_store = pool_store
        self.monitor = monitor
        self.budget: Optional[IterationBudget] = None
        self.exhausted_wallets: Set[str] = set()

    def apply_extension(self):
        extra = self.monitor.check_and_apply_extension()
        if extra:
            self.budget.extend(extra)
            logger.info(
                f"[{self.name}] Budget now {self.budget.total_iterations} iterations "
                f"({self.budget.remaining} remaining)"
            )

    async def run(self, token: CancellationToken) -> IterationBudget:
        wallets = _load_wallets(self.pool_store)
        unit = self.config.buy_interval_period_unit_sec
        self.budget = IterationBudget.of(iteration_count(self.config.total_period_min, unit))
        self.exhausted_wallets = set()
        self.apply_extension()

        if not wallets:
            logger.warning(f"[{self.name}] No wallets in pool, nothing to do")
            return self.budget

        logger.info(
            f"[{self.name}] Starting: {len(wallets)} wallets, {self.budget.total_iterations} iterations "
            f"every {format_duration(unit)}"
        )

        iteration = 0
        while not self.budget.exhausted and not token.cancelled:
            self.apply_extension()
            iteration += 1

            active = [w for w in wallets if w[0] not in self.exhausted_wallets]
            remaining = self.budget.remaining
            results = await asyncio.gather(
                *(self._buy(public_id, wallet, remaining) for public_id, wallet in active),
                return_exceptions=True,
            )
            for (public_id, _), result in zip(active, results):
                if isinstance(result, Exception):
                    logger.error(f"[{self.name}] {format_address(public_id)} buy crashed: {result}")

            if len(self.exhausted_wallets) >= len(wallets):
                logger.info(f"[{self.name}] All wallets exhausted after {iteration} iterations")
                break

            self.budget.consume()
            logger.info(f"[{self.name}] Iteration {iteration} done, {self.budget.remaining} remaining")
            if self.budget.exhausted:
                break
            if not await token.sleep(jittered_interval(unit, BUY_INTERVAL_JITTER_PERCENT)):
                break

        logger.info(f"[{self.name}] Finished after {iteration} iterations")
        return self.budget

    async def _buy(self, public_id: str, wallet: Keypair, remaining: int):
        balance = await self.exchange.get_balance(public_id)
        spendable = balance - self.config.token_account_rent_lamports
        variance = random.uniform(0, self.config.distribute_delta_percent)
        target = int(spendable / max(remaining, 1) * (1 - variance / 100))

        if target <= self.config.mint_rent_lamports:
            self.exhausted_wallets.add(public_id)
            self.exhausted(public_id, f"buy amount {format_sol(max(target, 0))} below minimum")
            return None

        signature = await self.retry("buy", public_id, lambda: self.exchange.buy(wallet, self.mint, target))
        if signature:
            logger.info(f"[{self.name}] {format_address(public_id)} bought {format_sol(target)}")
        return signature


class MarketMakerSellEngine(TradingEngine):
    name = "SELL BOT"

    def __init__(
        self,
        exchange: ExchangeAdapter,
        pool_store: WalletPoolStore,
        config: Config,
        metrics: Optional[MetricsCollector] = None,
        **kwargs,
    ):
        super().__init__(exchange, config, metrics, **kwargs)
        self.pool_store = pool_store
        self.iterations = 0

    @property
    def mint(self) -> str:
        """Sells trade on the PumpSwap pool once the token has migrated there."""
        return self.config.token_mint_pumpswap or self.config.token_mint

    async def run(self, token: CancellationToken) -> int:
        wallets = _load_wallets(self.pool_store)
        logger.info(f"[{self.name}] Starting with {len(wallets)} wallets on mint {format_address(self.mint)}")

        self.iterations = 0
        while not token.cancelled:
            holders = await self.holders(wallets)
            if not holders:
                logger.info(f"[{self.name}] No wallet holds tokens, stopping")
                break

            random.shuffle(holders)
            size = concurrency_subset_size(
                len(holders),
                self.config.sell_concurrency_percent,
                self.config.sell_concurrency_delta_percent,
            )
            selected = holders[:size]
            logger.info(f"[{self.name}] Iteration {self.iterations + 1}: {size}/{len(holders)} wallets selling")

            results = await asyncio.gather(
                *(self._sell(public_id, wallet) for public_id, wallet in selected),
                return_exceptions=True,
            )
            for (public_id, _), result in zip(selected, results):
                if isinstance(result, Exception):
                    logger.error(f"[{self.name}] {format_address(public_id)} sell crashed: {result}")
            self.iterations += 1

            interval = jittered_interval(
                self.config.sell_iteration_sleep_time_min * 60,
                self.config.sell_iteration_sleep_time_delta_percent,
            )
            if not await token.sleep(interval):
                break

        logger.info(f"[{self.name}] Finished after {self.iterations} iterations")
        return self.iterations

    async def holders(self, wallets: List[Wallet]) -> List[Wallet]:
        """Wallets with a nonzero token balance; failed queries count as empty."""

        async def _balance(public_id: str) -> int:
            try:
                return await self.exchange.get_token_balance(public_id, self.mint) or 0
            except Exception as e:
                logger.debug(f"[{self.name}] Token balance query failed for {format_address(public_id)}: {e}")
                return 0

        balances = await asyncio.gather(*(_balance(public_id) for public_id, _ in wallets))
        return [w for w, balance in zip(wallets, balances) if balance > 0]

    async def _sell(self, public_id: str, wallet: Keypair):
        balance = await self.exchange.get_balance(public_id)
        if balance < 2 * self.config.mint_rent_lamports:
            logger.info(f"[{self.name}] {format_address(public_id)} skipped, {format_sol(balance)} too low for fees")
            return None

        percent = sell_percent(self.config.sell_token_percent, self.config.sell_token_delta_percent)
        signature = await self.retry(
            "sell", public_id, lambda: self.exchange.sell_percent(wallet, self.mint, percent)
        )
        if signature:
            logger.info(f"[{self.name}] {format_address(public_id)} sold {percent:.0f}% of tokens")
        return signature
