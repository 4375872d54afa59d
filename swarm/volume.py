"""
Volume Bot
==========
Every round funds a fresh batch of wallets, then each wallet buys twice,
sells everything and sweeps what is left back to the main wallet.

Wallet workflows are started without waiting for the previous round's
wallets to finish. With ``round_overlap: unbounded`` rounds pile up freely
while earlier wallets are still retrying; ``bounded`` caps the number of
rounds in flight at ``max_inflight_rounds``.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from solders.keypair import Keypair

from config import Config
from exchange import ExchangeAdapter
from logging_utils import MetricsCollector
from utils import logger, format_sol, format_address, sol_to_lamports, uniform_between, AllocationError, PersistenceError
from swarm.allocator import WalletAllocator
from swarm.engine import TradingEngine
from swarm.pool import WalletPoolStore, WalletRecord, VOLUME_POOL
from swarm.retry import CancellationToken

DISTRIBUTION_RETRY_SECONDS = 30

STAGES = ("started", "bought_once", "bought_twice", "sold", "swept")


@dataclass
class RoundProgress:
    """Which wallets of one round reached which stage."""
    round_number: int
    wallets: List[str]
    stages: Dict[str, Set[str]] = field(default_factory=lambda: {s: set() for s in STAGES})

    def mark(self, stage: str, public_id: str):
        self.stages[stage].add(public_id)

    def missing(self) -> Dict[str, List[str]]:
        """Wallets that have not reached each stage yet."""
        return {
            stage: [w for w in self.wallets if w not in reached]
            for stage, reached in self.stages.items()
        }

    @property
    def complete(self) -> bool:
        return len(self.stages["swept"]) == len(self.wallets)


class VolumeBot(TradingEngine):
    name = "VOLUME BOT"

    def __init__(
        self,
        exchange: ExchangeAdapter,
        allocator: WalletAllocator,
        pool_store: WalletPoolStore,
        config: Config,
        main_wallet: Keypair,
        metrics: Optional[MetricsCollector] = None,
        distribution_retry_seconds: float = DISTRIBUTION_RETRY_SECONDS,
        **kwargs,
    ):
        super().__init__(exchange, config, metrics, **kwargs)
        self.allocator = allocator
        self.pool_store = pool_store
        self.main_wallet = main_wallet
        self.distribution_retry_seconds = distribution_retry_seconds
        self.rounds: List[RoundProgress] = []
        self._inflight: Set[asyncio.Task] = set()

    @property
    def main_address(self) -> str:
        return str(self.main_wallet.pubkey())

    async def run(self, token: CancellationToken):
        """Run rounds until cancelled, then wait for in-flight wallets."""
        logger.info(
            f"[{self.name}] Starting: {self.config.distribute_wallet_num} wallets/round, "
            f"{self.config.sol_amount_to_distribute} SOL/round, overlap={self.config.round_overlap}"
        )
        try:
            while not token.cancelled:
                if self.config.round_overlap == "bounded":
                    await self._wait_for_capacity(token)
                    if token.cancelled:
                        break

                progress = await self._start_round(token)
                if progress is None:
                    if not await token.sleep(self.distribution_retry_seconds):
                        break
                    continue

                if token.cancelled:
                    break
                interval = uniform_between(
                    self.config.distribute_interval_min, self.config.distribute_interval_max
                )
                logger.info(f"[{self.name}] Next round in {interval:.0f}s")
                completed = await token.sleep(interval)
                self.report_missing(progress)
                if not completed:
                    break
        finally:
            if self._inflight:
                logger.info(f"[{self.name}] Waiting for {len(self._inflight)} rounds in flight")
                await asyncio.gather(*list(self._inflight), return_exceptions=True)
            logger.info(f"[{self.name}] Stopped after {len(self.rounds)} rounds")

    async def _wait_for_capacity(self, token: CancellationToken):
        limit = max(1, self.config.max_inflight_rounds)
        while len(self._inflight) >= limit and not token.cancelled:
            await asyncio.wait(
                list(self._inflight),
                timeout=self.config.retry_delay_seconds or None,
                return_when=asyncio.FIRST_COMPLETED,
            )

    async def _start_round(self, token: CancellationToken) -> Optional[RoundProgress]:
        try:
            records = await self.allocator.allocate(
                self.main_wallet,
                self.config.distribute_wallet_num,
                sol_to_lamports(self.config.sol_amount_to_distribute),
                VOLUME_POOL,
            )
        except AllocationError as e:
            logger.error(f"[{self.name}] Distribution failed: {e}")
            return None

        progress = RoundProgress(len(self.rounds) + 1, [r.public_id for r in records])
        self.rounds.append(progress)
        logger.info(f"[{self.name}] Round {progress.round_number}: {len(records)} wallets funded")

        task = asyncio.create_task(self._run_round(records, progress, token))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return progress

    async def _run_round(self, records: List[WalletRecord], progress: RoundProgress, token: CancellationToken):
        count = len(records)
        await asyncio.gather(
            *(self._wallet_workflow(record, index, count, progress, token) for index, record in enumerate(records)),
            return_exceptions=True,
        )

    async def _wallet_workflow(
        self,
        record: WalletRecord,
        index: int,
        count: int,
        progress: RoundProgress,
        token: CancellationToken,
    ):
        public_id = record.public_id
        short = format_address(public_id)
        try:
            if not await token.sleep(index * self.config.buy_interval_max / count):
                logger.info(f"[{self.name}] {short} not started, left in pool")
                return
            progress.mark("started", public_id)
            wallet = record.keypair()

            balance = await self.exchange.get_balance(public_id)
            reserve = self.config.volume_fee_reserve_lamports
            if balance <= reserve:
                self.exhausted(public_id, f"balance {format_sol(balance)} below fee reserve")
                return

            percent = uniform_between(self.config.buy_lower_percent, self.config.buy_upper_percent)
            first = int((balance - reserve) * percent / 100)
            second = balance - first - reserve

            if not await self.retry("buy", public_id, lambda: self.exchange.buy(wallet, self.mint, first)):
                logger.error(f"[{self.name}] {short} first buy failed, left in pool")
                return
            progress.mark("bought_once", public_id)
            logger.info(f"[{self.name}] {short} bought {format_sol(first)} ({percent:.1f}%)")

            if not await token.sleep(uniform_between(self.config.buy_interval_min, self.config.buy_interval_max)):
                return

            if second > 0:
                if not await self.retry("buy", public_id, lambda: self.exchange.buy(wallet, self.mint, second)):
                    logger.error(f"[{self.name}] {short} second buy failed, left in pool")
                    return
                logger.info(f"[{self.name}] {short} bought {format_sol(second)}")
            progress.mark("bought_twice", public_id)

            if not await token.sleep(uniform_between(self.config.sell_interval_min, self.config.sell_interval_max)):
                return

            if not await self.retry("sell", public_id, lambda: self.exchange.sell(wallet, self.mint)):
                logger.error(f"[{self.name}] {short} sell failed, left in pool for collection")
                return
            progress.mark("sold", public_id)
            logger.info(f"[{self.name}] {short} sold all tokens")

            swept = await self.retry(
                "sweep",
                public_id,
                lambda: self.exchange.sweep(wallet, self.main_address, self.mint, self.main_wallet),
                max_attempts=self.config.sweep_attempts,
            )
            if not swept:
                logger.error(f"[{self.name}] {short} sweep failed, left in pool for collection")
                return
            progress.mark("swept", public_id)

            try:
                self.pool_store.remove(VOLUME_POOL, public_id)
            except PersistenceError as e:
                logger.error(f"[{self.name}] {short} swept but not removed from pool: {e}")
            logger.info(f"[{self.name}] {short} swept back to main wallet")
        except Exception as e:
            logger.exception(f"[{self.name}] {short} workflow crashed: {e}")

    def report_missing(self, progress: RoundProgress):
        if progress.complete:
            logger.info(f"[{self.name}] Round {progress.round_number}: all wallets swept")
            return
        for stage, wallets in progress.missing().items():
            if wallets:
                logger.info(
                    f"[{self.name}] Round {progress.round_number}: {len(wallets)} wallets not yet {stage}"
                )
