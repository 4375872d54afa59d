"""
Wallet Allocator
================
Generates fresh sub-wallets and funds them from the main wallet in a single
transaction.

Order of operations:
1. Check the main balance (nothing is generated if it is short)
2. Generate wallets and persist them to the pool
3. Submit one funding transaction (the adapter simulates first)
4. Record the funding on the distribution gate

Because step 2 happens before step 3, a failed funding transaction still
leaves the generated wallets on disk for manual recovery.
"""

import json
import random
import threading
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass, asdict
from typing import List, Optional

from solders.keypair import Keypair

from config import Config
from exchange import ExchangeAdapter
from logging_utils import MetricsCollector
from utils import (
    logger,
    format_sol,
    format_address,
    AllocationError,
    InsufficientFundsError,
    FundingTransactionError,
    PersistenceError,
    write_json_atomic,
)
from swarm.gate import DistributionGate
from swarm.pool import WalletPoolStore, WalletRecord

# One funding transaction cannot hold more transfer instructions than this
MAX_WALLETS_PER_FUNDING = 20

AUDIT_FILE = "allocation_audit.json"


@dataclass
class AllocationAuditRecord:
    """Audit record for one funding attempt."""
    timestamp: str
    key: str
    mode: str                              # volume | market_maker
    main_address: str
    wallet_count: int
    total_lamports: int
    wallets: List[str]
    tx_signature: Optional[str] = None
    status: str = "PENDING"                # PENDING, SUCCESS, FAILED
    error: Optional[str] = None

    def to_dict(self):
        return asdict(self)


class WalletAllocator:
    """Atomic, auditable funding of fresh sub-wallet pools."""

    def __init__(
        self,
        exchange: ExchangeAdapter,
        pool_store: WalletPoolStore,
        gate: DistributionGate,
        config: Config,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.exchange = exchange
        self.pool_store = pool_store
        self.gate = gate
        self.config = config
        self.metrics = metrics or MetricsCollector()
        self.audit_path = Path(config.data_dir) / AUDIT_FILE
        self._audit_lock = threading.Lock()

    # Amount planning

    def required_minimum(self, count: int, total_lamports: int) -> int:
        """Main balance needed before a volume allocation is attempted."""
        return total_lamports + self.config.main_fee_reserve_lamports

    def _clamp(self, count: int) -> int:
        if count < 1:
            raise AllocationError("Wallet count must be at least 1")
        if count > MAX_WALLETS_PER_FUNDING:
            logger.warning(
                f"Requested {count} wallets; one funding transaction holds at most "
                f"{MAX_WALLETS_PER_FUNDING}, clamping"
            )
            return MAX_WALLETS_PER_FUNDING
        return count

    def _vary(self, base: float) -> int:
        """Reduce a share by a uniform 0..variance percent."""
        cut = random.uniform(0, self.config.distribute_variance_percent)
        return int(base * (1 - cut / 100))

    def plan_volume_amounts(self, count: int, total_lamports: int) -> List[int]:
        base = total_lamports * (1 - self.config.distribution_reserve_percent / 100) / count
        return [self._vary(base) for _ in range(count)]

    def plan_market_maker_amounts(
        self,
        count: int,
        total_lamports: int,
        iteration_count: int,
        main_balance: int,
    ) -> List[int]:
        rent = self.config.token_account_rent_lamports
        reserve = self.config.main_fee_reserve_lamports
        tx_fee_buffer = self.config.tx_fee_lamports_per_iteration * iteration_count
        buffers = tx_fee_buffer + rent

        floor = count * (2 * rent + self.config.mint_rent_lamports) + reserve
        if main_balance < floor:
            raise InsufficientFundsError(
                f"Main wallet needs at least {format_sol(floor)} for {count} market maker wallets, "
                f"has {format_sol(main_balance)}"
            )

        budget = min(total_lamports + count * buffers, main_balance - reserve)
        base = total_lamports / count
        amounts = [self._vary(base) + buffers for _ in range(count - 1)]

        last = budget - sum(amounts)
        if last <= rent:
            raise InsufficientFundsError(
                f"Final wallet would receive {format_sol(max(last, 0))}, not above the rent buffer"
            )
        amounts.append(last)
        return amounts

    # Allocation

    async def allocate(
        self,
        main_wallet: Keypair,
        count: int,
        total_lamports: int,
        key: str,
    ) -> List[WalletRecord]:
        """
        Fund ``count`` fresh wallets with about ``total_lamports`` in total.

        Raises InsufficientFundsError or FundingTransactionError. The gate is
        only touched after a confirmed funding transaction.
        """
        count = self._clamp(count)
        main_address = str(main_wallet.pubkey())
        main_balance = await self.exchange.get_balance(main_address)

        needed = self.required_minimum(count, total_lamports)
        if main_balance < needed:
            self.metrics.record("fund", success=False)
            raise InsufficientFundsError(
                f"Main wallet needs {format_sol(needed)}, has {format_sol(main_balance)}"
            )

        amounts = self.plan_volume_amounts(count, total_lamports)
        return await self._commit(main_wallet, key, "volume", amounts)

    async def allocate_market_maker(
        self,
        main_wallet: Keypair,
        count: int,
        total_lamports: int,
        iteration_count: int,
        key: str,
    ) -> List[WalletRecord]:
        """
        Market maker allocation: each wallet also receives a per-iteration
        transaction fee buffer and a token account rent buffer, and the last
        wallet takes the exact remainder of the available budget.
        """
        count = self._clamp(count)
        main_balance = await self.exchange.get_balance(str(main_wallet.pubkey()))
        try:
            amounts = self.plan_market_maker_amounts(count, total_lamports, iteration_count, main_balance)
        except InsufficientFundsError:
            self.metrics.record("fund", success=False)
            raise
        return await self._commit(main_wallet, key, "market_maker", amounts)

    async def _commit(
        self,
        main_wallet: Keypair,
        key: str,
        mode: str,
        amounts: List[int],
    ) -> List[WalletRecord]:
        main_address = str(main_wallet.pubkey())
        records = [WalletRecord.generate(amount) for amount in amounts]
        total = sum(amounts)

        audit = AllocationAuditRecord(
            timestamp=datetime.now().isoformat(),
            key=key,
            mode=mode,
            main_address=main_address,
            wallet_count=len(records),
            total_lamports=total,
            wallets=[r.public_id for r in records],
        )

        try:
            self.pool_store.append(key, records)
        except PersistenceError as e:
            audit.status = "FAILED"
            audit.error = str(e)
            self._add_audit_record(audit)
            self.metrics.record("fund", success=False)
            raise AllocationError(f"Could not persist wallets before funding: {e}") from e

        logger.info(
            f"Funding {len(records)} wallets for '{key}' with {format_sol(total)} "
            f"from {format_address(main_address)}"
        )

        transfers = [(r.public_id, r.allocated_amount) for r in records]
        try:
            signature = await self.exchange.fund(main_wallet, transfers)
        except Exception as e:
            logger.error(f"Funding transaction raised: {e}")
            signature = None

        if not signature:
            audit.status = "FAILED"
            audit.error = "funding transaction failed"
            self._add_audit_record(audit)
            self.metrics.record("fund", success=False)
            raise FundingTransactionError(
                f"Funding transaction for '{key}' failed; {len(records)} wallets kept in pool for recovery"
            )

        audit.tx_signature = signature
        audit.status = "SUCCESS"
        self._add_audit_record(audit)
        self.metrics.record("fund", success=True)

        try:
            self.gate.record_funding(key)
        except PersistenceError as e:
            # Gate stays blocked; wallets are funded and on disk
            logger.error(f"Funded '{key}' but could not record distribution: {e}")

        for record in records:
            logger.debug(f"  {format_address(record.public_id)}: {format_sol(record.allocated_amount)}")
        logger.info(f"Funding confirmed: {signature}")
        return records

    # Audit trail

    def _add_audit_record(self, record: AllocationAuditRecord):
        with self._audit_lock:
            try:
                if self.audit_path.exists():
                    with open(self.audit_path, 'r') as f:
                        data = json.load(f)
                else:
                    data = {'version': '1.0', 'records': []}
                data['records'].append(record.to_dict())
                data['updated_at'] = datetime.now().isoformat()
                write_json_atomic(self.audit_path, data)
            except (OSError, ValueError, KeyError) as e:
                logger.error(f"Failed to save allocation audit log: {e}")

    def get_audit_trail(self, limit: int = 100) -> List[AllocationAuditRecord]:
        if not self.audit_path.exists():
            return []
        with open(self.audit_path, 'r') as f:
            data = json.load(f)
        return [AllocationAuditRecord(**r) for r in data.get('records', [])[-limit:]]
