"""
Collection / Gather
===================
Liquidates and sweeps every wallet of a pool back to the main wallet (or to
``gather_address``), removes fully emptied wallets from the pool and
disarms the distribution gate of every pool it processed.

Disarming is unconditional: collected SOL must not stay "launchable", so a
fresh funding cycle is required before the next run.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from solders.keypair import Keypair

from config import Config
from exchange import ExchangeAdapter
from logging_utils import MetricsCollector
from utils import logger, format_address
from swarm.engine import TradingEngine
from swarm.gate import DistributionGate
from swarm.pool import WalletPoolStore, WalletRecord


@dataclass
class CollectionSummary:
    pools: List[str] = field(default_factory=list)
    processed: int = 0
    sold: List[str] = field(default_factory=list)
    swept: List[str] = field(default_factory=list)
    collectible: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def merge(self, other: "CollectionSummary"):
        self.pools.extend(other.pools)
        self.processed += other.processed
        self.sold.extend(other.sold)
        self.swept.extend(other.swept)
        self.collectible.extend(other.collectible)
        self.failed.extend(other.failed)


class Collector(TradingEngine):
    name = "GATHER"

    def __init__(
        self,
        exchange: ExchangeAdapter,
        pool_store: WalletPoolStore,
        gate: DistributionGate,
        config: Config,
        main_wallet: Keypair,
        metrics: Optional[MetricsCollector] = None,
        **kwargs,
    ):
        super().__init__(exchange, config, metrics, **kwargs)
        self.pool_store = pool_store
        self.gate = gate
        self.main_wallet = main_wallet

    @property
    def destination(self) -> str:
        if self.config.gather_to_other_address and self.config.gather_address:
            return self.config.gather_address
        return str(self.main_wallet.pubkey())

    async def collect(self, pool: str) -> CollectionSummary:
        """Sell and sweep every wallet of ``pool``; does not touch the gate."""
        summary = CollectionSummary(pools=[pool])
        records = self.pool_store.load(pool)
        logger.info(f"[{self.name}] Collecting {len(records)} wallets from '{pool}' to {format_address(self.destination)}")

        await asyncio.gather(
            *(self._collect_wallet(record, index, summary) for index, record in enumerate(records))
        )
        summary.processed = len(records)

        if summary.collectible:
            self.pool_store.remove(pool, summary.collectible)

        logger.info(
            f"[{self.name}] '{pool}': {len(summary.sold)} sold, {len(summary.swept)} swept, "
            f"{len(summary.collectible)} emptied, {len(summary.failed)} failed"
        )
        return summary

    async def collect_all(self, pools: Iterable[str]) -> CollectionSummary:
        """Collect each pool, then disarm the gate of every pool processed."""
        pools = list(dict.fromkeys(pools))
        total = CollectionSummary()
        try:
            for pool in pools:
                total.merge(await self.collect(pool))
        finally:
            for pool in pools:
                self.gate.disarm(pool)
        return total

    async def _collect_wallet(self, record: WalletRecord, index: int, summary: CollectionSummary):
        public_id = record.public_id
        short = format_address(public_id)
        # Stagger starts so the RPC is not hit by every wallet at once
        await asyncio.sleep(index * self.config.collect_stagger_seconds)

        try:
            wallet = record.keypair()

            token_balance = await self.exchange.get_token_balance(public_id, self.mint)
            if token_balance > 0:
                sold = await self.retry(
                    "sell",
                    public_id,
                    lambda: self.exchange.sell(wallet, self.mint),
                    max_attempts=self.config.collect_sell_attempts,
                )
                if sold:
                    summary.sold.append(public_id)
                else:
                    logger.warning(f"[{self.name}] {short} sell failed, sweeping tokens instead")

            balance = await self.exchange.get_balance(public_id)
            has_account = await self.exchange.has_token_account(public_id, self.mint)
            if balance > 0 or has_account:
                swept = await self.retry(
                    "sweep",
                    public_id,
                    lambda: self.exchange.sweep(wallet, self.destination, self.mint, self.main_wallet),
                    max_attempts=self.config.sweep_attempts,
                )
                if not swept:
                    logger.error(f"[{self.name}] {short} sweep failed")
                    summary.failed.append(public_id)
                    return
                summary.swept.append(public_id)

            if (
                await self.exchange.get_balance(public_id) == 0
                and not await self.exchange.has_token_account(public_id, self.mint)
            ):
                summary.collectible.append(public_id)
            else:
                summary.failed.append(public_id)
        except Exception as e:
            logger.exception(f"[{self.name}] {short} collection crashed: {e}")
            summary.failed.append(public_id)
