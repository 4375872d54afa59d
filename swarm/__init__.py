"""
Swarm Trading Module
====================
Multi-wallet volume bot and market maker for a single token.

Features:
- Fund fresh sub-wallets from the main wallet in one transaction
- Cooldown gate between funding and trading
- Volume bot, market maker buy and market maker sell engines
- Runtime extension of market maker buy sessions
- Collection of every wallet back to the main wallet

Security:
- Sub-wallets persisted before funding so nothing is ever lost
- Optional PBKDF2 + Fernet encryption of stored secrets
- Audit trail of every funding transaction
"""

from .pool import WalletRecord, WalletPoolStore, VOLUME_POOL, MARKET_MAKER_POOL
from .gate import DistributionGate, DistributionState
from .allocator import WalletAllocator
from .retry import CancellationToken, with_retry
from .orchestrator import SwarmOrchestrator, BotVariant

__all__ = [
    "WalletRecord",
    "WalletPoolStore",
    "VOLUME_POOL",
    "MARKET_MAKER_POOL",
    "DistributionGate",
    "DistributionState",
    "WalletAllocator",
    "CancellationToken",
    "with_retry",
    "SwarmOrchestrator",
    "BotVariant",
]
