"""
Exchange Adapter
================
Ledger-facing interface used by the allocator, the trading engines and the
collector, plus an in-memory ledger for dry runs.

Every call returns ``None`` (or 0 for balance queries) on simulation or
confirmation failure instead of raising, so callers can feed results straight
into the retry primitive.

Signing operations take a ``solders`` Keypair; queries take a base58 public
key string.
"""

import json
import importlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from solders.keypair import Keypair

from utils import logger, format_address, format_sol, write_json_atomic


Transfer = Tuple[str, int]  # (destination public key, lamports)

DRY_RUN_LEDGER_FILE = "dry_run_ledger.json"


class ExchangeAdapter(ABC):
    """Abstract async ledger/exchange client."""

    @abstractmethod
    async def buy(self, wallet: Keypair, mint: str, lamports: int) -> Optional[str]:
        """Spend ``lamports`` of native balance on ``mint``."""

    @abstractmethod
    async def sell(self, wallet: Keypair, mint: str) -> Optional[str]:
        """Sell the wallet's full token balance."""

    @abstractmethod
    async def sell_percent(self, wallet: Keypair, mint: str, percent: float) -> Optional[str]:
        """Sell ``percent`` % of the wallet's token balance."""

    @abstractmethod
    async def get_balance(self, owner: str) -> int:
        """Native balance in lamports."""

    @abstractmethod
    async def get_token_balance(self, owner: str, mint: str) -> int:
        """Raw token balance of the owner's associated token account."""

    @abstractmethod
    async def transfer(self, source: Keypair, destination: str, lamports: int) -> Optional[str]:
        pass

    @abstractmethod
    async def fund(self, main: Keypair, transfers: List[Transfer]) -> Optional[str]:
        """Submit one transaction holding one transfer instruction per entry."""

    @abstractmethod
    async def sweep(
        self,
        wallet: Keypair,
        destination: str,
        mint: str,
        fee_payer: Keypair,
    ) -> Optional[str]:
        """
        Return everything a sub-wallet holds to ``destination`` in one
        transaction: create the destination token account if needed, move
        remaining tokens, close the wallet's token account and transfer the
        native balance. Co-signed by ``fee_payer``.
        """

    @abstractmethod
    async def has_token_account(self, owner: str, mint: str) -> bool:
        pass


@dataclass
class LedgerTransaction:
    """A transaction recorded by the dry-run ledger."""
    signature: str
    action: str
    signer: str
    detail: str
    timestamp: str


class DryRunExchange(ExchangeAdapter):
    """
    In-memory ledger used for ``--dry-run`` and by the test-suite.

    Buys convert lamports to tokens at ``tokens_per_lamport``; each submitted
    transaction costs ``fee_lamports``. Creating a token account costs
    ``token_account_rent`` which is refunded when the account is closed.

    Failures can be injected per action with ``fail_next(action, times)`` or
    permanently with ``fail_always``.

    With ``state_path`` the balances, token accounts and signature counter are
    kept in a JSON file so separate CLI commands see the same ledger. The
    transaction list stays in memory.
    """

    def __init__(
        self,
        tokens_per_lamport: float = 1.0,
        fee_lamports: int = 5_000,
        token_account_rent: int = 2_039_280,
        state_path: Optional[str] = None,
    ):
        self.tokens_per_lamport = tokens_per_lamport
        self.fee_lamports = fee_lamports
        self.token_account_rent = token_account_rent

        self.balances: Dict[str, int] = {}
        self.token_balances: Dict[Tuple[str, str], int] = {}
        self.token_accounts: Set[Tuple[str, str]] = set()
        self.transactions: List[LedgerTransaction] = []
        self.fail_always: Set[str] = set()
        self._fail_counts: Dict[str, int] = {}
        self._sequence = 0
        self.state_path = Path(state_path) if state_path else None
        if self.state_path and self.state_path.exists():
            self._load_state()

    # Ledger file

    def _load_state(self):
        with open(self.state_path, 'r') as f:
            data = json.load(f)
        self.balances = {k: int(v) for k, v in data.get('balances', {}).items()}
        self.token_balances = {(owner, mint): int(amount) for owner, mint, amount in data.get('token_balances', [])}
        self.token_accounts = {(owner, mint) for owner, mint in data.get('token_accounts', [])}
        self._sequence = int(data.get('sequence', 0))

    def save(self):
        if not self.state_path:
            return
        write_json_atomic(self.state_path, {
            'balances': self.balances,
            'token_balances': [[owner, mint, amount] for (owner, mint), amount in self.token_balances.items()],
            'token_accounts': sorted([owner, mint] for owner, mint in self.token_accounts),
            'sequence': self._sequence,
        })

    # Test and dry-run helpers

    def airdrop(self, owner: str, lamports: int):
        self.balances[owner] = self.balances.get(owner, 0) + lamports
        self.save()

    def mint_to(self, owner: str, mint: str, amount: int):
        key = (owner, mint)
        self.token_accounts.add(key)
        self.token_balances[key] = self.token_balances.get(key, 0) + amount
        self.save()

    def fail_next(self, action: str, times: int = 1):
        self._fail_counts[action] = self._fail_counts.get(action, 0) + times

    def actions(self, action: Optional[str] = None) -> List[LedgerTransaction]:
        if action is None:
            return list(self.transactions)
        return [t for t in self.transactions if t.action == action]

    def _should_fail(self, action: str) -> bool:
        if action in self.fail_always:
            return True
        remaining = self._fail_counts.get(action, 0)
        if remaining > 0:
            self._fail_counts[action] = remaining - 1
            return True
        return False

    def _record(self, action: str, signer: str, detail: str) -> str:
        self._sequence += 1
        signature = f"dryrun-{action}-{self._sequence:06d}"
        self.transactions.append(LedgerTransaction(
            signature=signature,
            action=action,
            signer=signer,
            detail=detail,
            timestamp=datetime.now().isoformat(),
        ))
        logger.debug(f"[DRY RUN] {action} {format_address(signer)} {detail} -> {signature}")
        self.save()
        return signature

    def _debit(self, owner: str, lamports: int):
        self.balances[owner] = self.balances.get(owner, 0) - lamports

    # ExchangeAdapter

    async def buy(self, wallet: Keypair, mint: str, lamports: int) -> Optional[str]:
        owner = str(wallet.pubkey())
        key = (owner, mint)
        rent = 0 if key in self.token_accounts else self.token_account_rent
        cost = lamports + self.fee_lamports + rent

        if lamports <= 0 or self.balances.get(owner, 0) < cost or self._should_fail("buy"):
            return None

        self._debit(owner, cost)
        self.token_accounts.add(key)
        tokens = int(lamports * self.tokens_per_lamport)
        self.token_balances[key] = self.token_balances.get(key, 0) + tokens
        return self._record("buy", owner, f"{format_sol(lamports)} -> {tokens} tokens")

    async def sell(self, wallet: Keypair, mint: str) -> Optional[str]:
        return await self._sell(wallet, mint, 100.0, "sell")

    async def sell_percent(self, wallet: Keypair, mint: str, percent: float) -> Optional[str]:
        return await self._sell(wallet, mint, percent, "sell_percent")

    async def _sell(self, wallet: Keypair, mint: str, percent: float, action: str) -> Optional[str]:
        owner = str(wallet.pubkey())
        key = (owner, mint)
        held = self.token_balances.get(key, 0)
        amount = held if percent >= 100 else int(held * percent / 100)

        if amount <= 0 or self.balances.get(owner, 0) < self.fee_lamports:
            return None
        if self._should_fail(action):
            return None

        self.token_balances[key] = held - amount
        proceeds = int(amount / self.tokens_per_lamport)
        self._debit(owner, self.fee_lamports - proceeds)
        return self._record(action, owner, f"{amount} tokens -> {format_sol(proceeds)}")

    async def get_balance(self, owner: str) -> int:
        return self.balances.get(owner, 0)

    async def get_token_balance(self, owner: str, mint: str) -> int:
        return self.token_balances.get((owner, mint), 0)

    async def transfer(self, source: Keypair, destination: str, lamports: int) -> Optional[str]:
        owner = str(source.pubkey())
        if lamports <= 0 or self.balances.get(owner, 0) < lamports + self.fee_lamports:
            return None
        if self._should_fail("transfer"):
            return None

        self._debit(owner, lamports + self.fee_lamports)
        self.airdrop(destination, lamports)
        return self._record("transfer", owner, f"{format_sol(lamports)} -> {format_address(destination)}")

    async def fund(self, main: Keypair, transfers: List[Transfer]) -> Optional[str]:
        owner = str(main.pubkey())
        total = sum(amount for _, amount in transfers)

        # Simulation: the whole batch lands or nothing does
        if not transfers or self.balances.get(owner, 0) < total + self.fee_lamports:
            logger.warning("[DRY RUN] Funding simulation failed: insufficient balance")
            return None
        if self._should_fail("fund"):
            return None

        self._debit(owner, total + self.fee_lamports)
        for destination, amount in transfers:
            self.airdrop(destination, amount)
        return self._record("fund", owner, f"{len(transfers)} transfers, {format_sol(total)}")

    async def sweep(
        self,
        wallet: Keypair,
        destination: str,
        mint: str,
        fee_payer: Keypair,
    ) -> Optional[str]:
        owner = str(wallet.pubkey())
        payer = str(fee_payer.pubkey())
        key = (owner, mint)

        if self.balances.get(payer, 0) < self.fee_lamports or self._should_fail("sweep"):
            return None

        self._debit(payer, self.fee_lamports)

        tokens = self.token_balances.pop(key, 0)
        if tokens:
            self.mint_to(destination, mint, tokens)

        refund = 0
        if key in self.token_accounts:
            self.token_accounts.discard(key)
            refund = self.token_account_rent

        lamports = self.balances.pop(owner, 0) + refund
        if lamports:
            self.airdrop(destination, lamports)

        return self._record("sweep", owner, f"{tokens} tokens, {format_sol(lamports)} -> {format_address(destination)}")

    async def has_token_account(self, owner: str, mint: str) -> bool:
        return (owner, mint) in self.token_accounts


def load_exchange(config) -> ExchangeAdapter:
    """
    Build the adapter for a config.

    ``exchange_factory`` names a ``package.module:callable`` that receives the
    Config (``rpc_url``, ``rpc_websocket_url`` and the rest) and returns an
    ExchangeAdapter. Dry-run mode always uses the ledger file under
    ``data_dir``.
    """
    if config.dry_run:
        return DryRunExchange(
            token_account_rent=config.token_account_rent_lamports,
            state_path=Path(config.data_dir) / DRY_RUN_LEDGER_FILE,
        )

    if not config.exchange_factory:
        raise ValueError("exchange_factory must be configured unless running with --dry-run")

    module_name, _, attr = config.exchange_factory.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Invalid exchange_factory '{config.exchange_factory}', expected 'module:callable'")

    logger.info(f"Building exchange adapter {config.exchange_factory} for {config.rpc_url}")
    factory = getattr(importlib.import_module(module_name), attr)
    adapter = factory(config)
    if not isinstance(adapter, ExchangeAdapter):
        raise TypeError(f"{config.exchange_factory} did not return an ExchangeAdapter")
    return adapter
