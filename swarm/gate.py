"""
Distribution Gate
=================
"Fund, then wait, then trade." Each pool key remembers when it was last
funded; a bot may only launch once the shared cooldown has elapsed since
then. Collection disarms the gate so collected SOL never stays launchable.

The store is read on every check. Anything unreadable counts as "not
funded", which blocks trading rather than allowing it.
"""

import json
import threading
from pathlib import Path
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Union

from utils import logger, format_remaining, write_json_atomic, PersistenceError

AVAILABLE = "available"
FUNDING_REQUIRED = "funding required"

GATE_FILE = "distribution_state.json"


@dataclass
class DistributionState:
    occurred: bool = False
    last_funding_timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            'occurred': self.occurred,
            'last_funding_timestamp': (
                self.last_funding_timestamp.isoformat() if self.last_funding_timestamp else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "DistributionState":
        raw = data.get('last_funding_timestamp')
        ts = datetime.fromisoformat(raw) if raw else None
        # occurred must agree with the timestamp
        return cls(occurred=bool(data.get('occurred')) and ts is not None, last_funding_timestamp=ts)


class DistributionGate:
    """Per-key funding timestamps plus the shared cooldown policy."""

    def __init__(
        self,
        data_dir: str = "./data",
        cooldown_minutes: float = 5,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.path = Path(data_dir) / GATE_FILE
        self.cooldown = timedelta(minutes=cooldown_minutes)
        self.clock = clock
        self._lock = threading.RLock()

    def _read_all(self) -> Dict[str, Dict]:
        if not self.path.exists():
            return {}
        with open(self.path, 'r') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError("gate store is not a mapping")
        return data

    def state(self, key: str) -> DistributionState:
        with self._lock:
            try:
                entry = self._read_all().get(key) or {}
                return DistributionState.from_dict(entry)
            except (OSError, ValueError, TypeError) as e:
                logger.warning(f"Distribution state unreadable ({e}); treating '{key}' as not funded")
                return DistributionState()

    def _update(self, key: str, state: DistributionState):
        with self._lock:
            try:
                data = self._read_all()
            except (OSError, ValueError) as e:
                logger.warning(f"Distribution state unreadable ({e}); rewriting it")
                data = {}
            data[key] = state.to_dict()
            try:
                write_json_atomic(self.path, data)
            except OSError as e:
                raise PersistenceError(f"Failed to write distribution state: {e}") from e

    def record_funding(self, key: str):
        now = self.clock()
        self._update(key, DistributionState(occurred=True, last_funding_timestamp=now))
        logger.info(f"Distribution recorded for '{key}' at {now.isoformat(timespec='seconds')}")

    def disarm(self, key: str):
        self._update(key, DistributionState())
        logger.info(f"Distribution gate disarmed for '{key}'")

    def can_launch(self, key: str) -> bool:
        state = self.state(key)
        if not state.occurred:
            return False
        return self.clock() - state.last_funding_timestamp >= self.cooldown

    def time_remaining(self, key: str) -> Union[timedelta, str]:
        state = self.state(key)
        if not state.occurred:
            return FUNDING_REQUIRED
        remaining = state.last_funding_timestamp + self.cooldown - self.clock()
        if remaining <= timedelta(0):
            return AVAILABLE
        return remaining

    def describe(self, key: str) -> str:
        remaining = self.time_remaining(key)
        if remaining == FUNDING_REQUIRED:
            return "Distribution required first"
        if remaining == AVAILABLE:
            return "Available now"
        return format_remaining(remaining)
