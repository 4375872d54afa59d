"""
Swarm Orchestrator
==================
Owns the run registry: at most one run per bot variant, while different
variants may run side by side. Every engine and store is built once here
and handed to the engines, so nothing re-reads global state mid-run.
"""

import asyncio
from enum import Enum
from datetime import datetime
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from solders.keypair import Keypair

from config import Config
from exchange import ExchangeAdapter
from logging_utils import MetricsCollector
from utils import (
    logger,
    sol_to_lamports,
    format_duration,
    LaunchBlockedError,
    BotAlreadyRunningError,
)
from swarm.allocator import WalletAllocator
from swarm.collector import Collector, CollectionSummary
from swarm.extension import ExtensionMonitor, ExtensionSource, InMemoryExtensionSource, MAX_EXTENSION_MINUTES
from swarm.gate import DistributionGate
from swarm.market_maker import MarketMakerBuyEngine, MarketMakerSellEngine, iteration_count
from swarm.pool import WalletPoolStore, WalletRecord, VOLUME_POOL, MARKET_MAKER_POOL, POOL_NAMES
from swarm.retry import CancellationToken
from swarm.volume import VolumeBot


class BotVariant(Enum):
    VOLUME_BOT = "volume_bot"
    MARKET_MAKER_BUY = "market_maker_buy"
    MARKET_MAKER_SELL = "market_maker_sell"

    @property
    def pool(self) -> str:
        """Pool and gate key used by this variant."""
        return VOLUME_POOL if self is BotVariant.VOLUME_BOT else MARKET_MAKER_POOL


@dataclass
class RunState:
    variant: BotVariant
    token: CancellationToken
    started_at: datetime
    task: "asyncio.Task"
    engine: object = None


class SwarmOrchestrator:
    def __init__(
        self,
        config: Config,
        exchange: ExchangeAdapter,
        main_wallet: Keypair,
        pool_store: Optional[WalletPoolStore] = None,
        gate: Optional[DistributionGate] = None,
        extension_source: Optional[ExtensionSource] = None,
        metrics: Optional[MetricsCollector] = None,
        engine_options: Optional[Dict] = None,
    ):
        self.config = config
        self.exchange = exchange
        self.main_wallet = main_wallet
        self.pool_store = pool_store or WalletPoolStore(config.data_dir)
        self.gate = gate or DistributionGate(config.data_dir, config.distribute_to_run_delay_min)
        self.extension_source = extension_source or InMemoryExtensionSource()
        self.metrics = metrics or MetricsCollector()
        self.engine_options = engine_options or {}
        self.allocator = WalletAllocator(exchange, self.pool_store, self.gate, config, self.metrics)
        self._runs: Dict[BotVariant, RunState] = {}

    # Engine construction

    def _build_engine(self, variant: BotVariant):
        options = dict(self.engine_options)
        if variant is BotVariant.VOLUME_BOT:
            return VolumeBot(
                self.exchange, self.allocator, self.pool_store, self.config,
                self.main_wallet, self.metrics, **options
            )
        options.pop("distribution_retry_seconds", None)
        if variant is BotVariant.MARKET_MAKER_BUY:
            monitor = ExtensionMonitor(self.extension_source, self.config.buy_interval_period_unit_sec)
            return MarketMakerBuyEngine(
                self.exchange, self.pool_store, self.config, monitor, self.metrics, **options
            )
        return MarketMakerSellEngine(self.exchange, self.pool_store, self.config, self.metrics, **options)

    # Registry

    def running(self) -> List[BotVariant]:
        return [v for v, state in self._runs.items() if not state.task.done()]

    def is_running(self, variant: BotVariant) -> bool:
        return variant in self.running()

    def launch(self, variant: BotVariant) -> RunState:
        """Start a variant. Must be called from inside the event loop."""
        variant = BotVariant(variant)
        if variant in self._runs:
            raise BotAlreadyRunningError(f"{variant.value} is already running")
        if not self.gate.can_launch(variant.pool):
            raise LaunchBlockedError(f"{variant.value}: {self.gate.describe(variant.pool)}")

        engine = self._build_engine(variant)
        token = CancellationToken()
        task = asyncio.create_task(self._run(variant, engine, token))
        state = RunState(variant=variant, token=token, started_at=datetime.now(), task=task, engine=engine)
        self._runs[variant] = state
        logger.info(f"Launched {variant.value}")
        return state

    async def _run(self, variant: BotVariant, engine, token: CancellationToken):
        try:
            return await engine.run(token)
        except Exception as e:
            logger.exception(f"{variant.value} terminated with error: {e}")
            raise
        finally:
            self._runs.pop(variant, None)
            logger.info(f"{variant.value} finished")

    async def stop(self, variant: BotVariant):
        """Signal a variant to stop and wait for it to settle."""
        variant = BotVariant(variant)
        state = self._runs.get(variant)
        if state is None:
            logger.info(f"{variant.value} is not running")
            return
        logger.info(f"Stopping {variant.value}; in-flight attempts will finish first")
        state.token.cancel()
        await asyncio.gather(state.task, return_exceptions=True)

    async def stop_all(self):
        for variant in list(self._runs):
            await self.stop(variant)

    async def wait(self, variant: BotVariant):
        state = self._runs.get(BotVariant(variant))
        if state is not None:
            return await state.task

    def status(self) -> Dict[str, Dict]:
        """Pool and gate state under ``pools``, run registry under ``runs``."""
        report = {'pools': {}, 'runs': {}}
        for pool in POOL_NAMES:
            report['pools'][pool] = {
                'wallets': self.pool_store.count(pool),
                'gate': self.gate.describe(pool),
                'can_launch': self.gate.can_launch(pool),
            }
        for variant in BotVariant:
            state = self._runs.get(variant)
            report['runs'][variant.value] = {
                'running': state is not None and not state.task.done(),
                'uptime': format_duration((datetime.now() - state.started_at).total_seconds()) if state else None,
            }
        return report

    # Operator actions

    async def fund(self, key: str) -> List[WalletRecord]:
        """Allocate the configured wallet count and amount for a pool key."""
        if key == VOLUME_POOL:
            return await self.allocator.allocate(
                self.main_wallet,
                self.config.distribute_wallet_num,
                sol_to_lamports(self.config.sol_amount_to_distribute),
                key,
            )
        if key == MARKET_MAKER_POOL:
            return await self.allocator.allocate_market_maker(
                self.main_wallet,
                self.config.distribute_wallet_num_marketmaker,
                sol_to_lamports(self.config.sol_amount_to_market_maker),
                iteration_count(self.config.total_period_min, self.config.buy_interval_period_unit_sec),
                key,
            )
        raise ValueError(f"Unknown pool '{key}'")

    def extend(self, minutes: float):
        """Queue extra running time for the market maker buy run."""
        if not 0 < minutes <= MAX_EXTENSION_MINUTES:
            raise ValueError(f"Extension must be between 0 and {MAX_EXTENSION_MINUTES} minutes")
        if not self.is_running(BotVariant.MARKET_MAKER_BUY):
            raise LaunchBlockedError("Market maker buy is not running; nothing to extend")
        if not self.gate.can_launch(MARKET_MAKER_POOL):
            raise LaunchBlockedError(f"market_maker: {self.gate.describe(MARKET_MAKER_POOL)}")
        pending = self.extension_source.read() or 0
        self.extension_source.set(pending + minutes)
        logger.info(f"Extension of {minutes} min queued for market maker buy")

    async def collect(self, pools: Optional[Iterable[str]] = None) -> CollectionSummary:
        """Stop every variant using these pools, then collect and disarm."""
        pools = list(pools or POOL_NAMES)
        for pool in pools:
            if pool not in POOL_NAMES:
                raise ValueError(f"Unknown pool '{pool}'")
        for variant in list(self._runs):
            if variant.pool in pools:
                await self.stop(variant)

        collector = Collector(self.exchange, self.pool_store, self.gate, self.config, self.main_wallet, self.metrics)
        return await collector.collect_all(pools)
