"""
Utility Module

Exceptions, secure logging, formatting and randomization helpers shared by
the swarm engines.

SECURITY:
- Log messages are sanitized so base58 keypair secrets and passwords never
  reach the console or log files
"""

import os
import re
import json
import math
import random
import logging
import tempfile
from pathlib import Path
from typing import Any, Optional
from datetime import timedelta

from rich.console import Console
from rich.logging import RichHandler
from solders.pubkey import Pubkey

# Global console for Rich output
console = Console()

LAMPORTS_PER_SOL = 1_000_000_000


class AllocationError(Exception):
    """Base class for wallet allocation failures."""
    pass


class InsufficientFundsError(AllocationError):
    """Main wallet cannot cover the requested distribution."""
    pass


class FundingTransactionError(AllocationError):
    """The funding transaction failed simulation or confirmation."""
    pass


class PersistenceError(Exception):
    """A pool or gate store could not be read or written."""
    pass


class LaunchBlockedError(Exception):
    """A bot variant may not launch yet (no funding, or cooldown running)."""
    pass


class BotAlreadyRunningError(Exception):
    """A second run of an already running bot variant was requested."""
    pass


class SecureLogger:
    """
    Logger that sanitizes sensitive data from log messages.

    A Solana keypair secret is 64 bytes, i.e. 86-88 base58 characters. Public
    keys (32-44 chars) and transaction signatures stay visible.
    """

    SENSITIVE_PATTERNS = [
        (r'\b[1-9A-HJ-NP-Za-km-z]{86,88}\b', '[SECRET_REDACTED]'),
        (r'password["\']?\s*[:=]\s*["\']?[^"\'\s,]+', 'password=[REDACTED]'),
        (r'private[_-]?key["\']?\s*[:=]\s*["\']?[^"\'\s,]+', 'private_key=[REDACTED]'),
    ]

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _sanitize(self, msg: str) -> str:
        """Remove sensitive data from log message."""
        if not isinstance(msg, str):
            msg = str(msg)

        sanitized = msg
        for pattern, replacement in self.SENSITIVE_PATTERNS:
            sanitized = re.sub(pattern, replacement, sanitized, flags=re.IGNORECASE)
        return sanitized

    def debug(self, msg: str, *args, **kwargs):
        self._logger.debug(self._sanitize(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._logger.info(self._sanitize(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._logger.warning(self._sanitize(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._logger.error(self._sanitize(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs):
        self._logger.exception(self._sanitize(msg), *args, **kwargs)

    def critical(self, msg: str, *args, **kwargs):
        self._logger.critical(self._sanitize(msg), *args, **kwargs)


LOGGER_NAME = "swarm_bot"

# Handlers are attached by setup_logging(); until then records propagate to root.
logger = SecureLogger(logging.getLogger(LOGGER_NAME))


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = "./logs/swarm_bot.log",
    json_file: bool = True,
) -> SecureLogger:
    """
    Setup console (Rich) and rotating file logging for the bot logger.

    Returns the module-level SecureLogger so callers can keep using it.
    """
    from logging_utils import JSONFormatter, build_rotating_handler

    base = logging.getLogger(LOGGER_NAME)
    base.setLevel(getattr(logging, log_level.upper()))
    base.handlers = []

    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        rich_tracebacks=True
    )
    rich_handler.setLevel(getattr(logging, log_level.upper()))
    rich_handler.setFormatter(logging.Formatter("%(message)s"))
    base.addHandler(rich_handler)

    if log_file:
        log_path = os.path.abspath(log_file)
        os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)

        file_handler = build_rotating_handler(log_path)
        file_handler.setLevel(getattr(logging, log_level.upper()))
        if json_file:
            file_handler.setFormatter(JSONFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S"
            ))
        base.addHandler(file_handler)

    return logger


# Formatting utilities

def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


def sol_to_lamports(sol: float) -> int:
    return int(round(sol * LAMPORTS_PER_SOL))


def format_sol(lamports: int) -> str:
    """Format a lamport amount as SOL with appropriate precision."""
    sol = lamports_to_sol(lamports)
    if sol < 0.001:
        return f"{sol:.6f} SOL"
    elif sol < 1:
        return f"{sol:.4f} SOL"
    else:
        return f"{sol:.3f} SOL"


def format_duration(seconds: int) -> str:
    """Format duration in seconds to human-readable string."""
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    elif seconds < 3600:
        minutes = seconds // 60
        secs = seconds % 60
        return f"{minutes}m {secs}s" if secs > 0 else f"{minutes}m"
    else:
        hours = seconds // 3600
        minutes = (seconds % 3600) // 60
        return f"{hours}h {minutes}m" if minutes > 0 else f"{hours}h"


def format_remaining(remaining: timedelta) -> str:
    """Render a cooldown remainder the way the operator menu shows it."""
    total = max(0, int(remaining.total_seconds()))
    hours = total // 3600
    minutes = (total % 3600) // 60
    if hours > 0:
        return f"{hours}h {minutes}m remaining"
    return f"{minutes}m remaining"


def format_address(address: str, length: int = 4) -> str:
    """Format a base58 public key with ellipsis."""
    if len(address) <= length * 2 + 3:
        return address
    return f"{address[:length]}...{address[-length:]}"


# Randomization utilities

def uniform_between(low: float, high: float) -> float:
    """Uniform draw in [low, high]; bounds may be given in either order."""
    if high < low:
        low, high = high, low
    return low + random.random() * (high - low)


def signed_jitter(delta: float) -> int:
    """
    Random whole-number offset in [-delta, +delta] with a random sign.

    Used for "X ± delta" percentages on concurrency, sell size and sleep
    intervals.
    """
    sign = -1 if random.random() < 0.5 else 1
    return sign * int(round(delta * random.random()))


def jittered_interval(base_seconds: float, delta_percent: float) -> float:
    """base_seconds scaled by (1 ± up to delta_percent %), never negative."""
    return max(0.0, base_seconds * (1 + signed_jitter(delta_percent) / 100))


def ceil_div_seconds(total_seconds: float, unit_seconds: float) -> int:
    """Number of unit-sized intervals needed to cover total_seconds."""
    if unit_seconds <= 0:
        raise ValueError("Interval unit must be positive")
    return int(math.ceil(total_seconds / unit_seconds))


# Validation utilities

def validate_public_key(address: str) -> bool:
    """Validate a base58 Solana public key."""
    if not address:
        return False
    try:
        Pubkey.from_string(address)
        return True
    except Exception:
        return False



# Persistence utilities

def write_json_atomic(path: Path, data: Any):
    """Write JSON via a temp file in the same directory, then rename over."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, 'w') as f:
            json.dump(data, f, indent=2)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
