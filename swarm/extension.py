"""
Runtime Extension Monitor
=========================
Lets an operator lengthen a running market maker buy session. The operator
writes "additional minutes" to a source; the engine polls it, converts the
minutes into iterations and resets the source to zero in the same step, so
one extension is never applied twice.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass

from config import ConfigManager
from utils import logger, ceil_div_seconds

MAX_EXTENSION_MINUTES = 1440


class ExtensionSource(ABC):
    """Externally mutable "additional minutes" value."""

    @abstractmethod
    def read(self) -> float:
        pass

    @abstractmethod
    def set(self, minutes: float):
        pass

    @abstractmethod
    def take(self) -> float:
        """Return the pending minutes and reset the source to zero."""


class InMemoryExtensionSource(ExtensionSource):
    def __init__(self, minutes: float = 0):
        self._minutes = minutes
        self._lock = threading.Lock()

    def read(self) -> float:
        with self._lock:
            return self._minutes

    def set(self, minutes: float):
        with self._lock:
            self._minutes = minutes

    def take(self) -> float:
        with self._lock:
            minutes, self._minutes = self._minutes, 0
            return minutes


class ConfigExtensionSource(ExtensionSource):
    """``additional_time_min`` in the YAML config file."""

    KEY = "additional_time_min"

    def __init__(self, config_manager: ConfigManager):
        self.config_manager = config_manager
        self._lock = threading.Lock()

    def read(self) -> float:
        return float(self.config_manager.read_raw_config().get(self.KEY) or 0)

    def set(self, minutes: float):
        with self._lock:
            self.config_manager.update_config({self.KEY: minutes})

    def take(self) -> float:
        with self._lock:
            minutes = self.read()
            if minutes:
                self.config_manager.update_config({self.KEY: 0})
            return minutes


@dataclass
class IterationBudget:
    """Iteration counter for a market maker buy run. Only extend() raises it."""
    total_iterations: int
    remaining: int

    @classmethod
    def of(cls, iterations: int) -> "IterationBudget":
        return cls(total_iterations=iterations, remaining=iterations)

    def extend(self, iterations: int):
        if iterations > 0:
            self.total_iterations += iterations
            self.remaining += iterations

    def consume(self):
        if self.remaining > 0:
            self.remaining -= 1

    @property
    def exhausted(self) -> bool:
        return self.remaining <= 0


class ExtensionMonitor:
    def __init__(self, source: ExtensionSource, unit_seconds: float):
        self.source = source
        self.unit_seconds = unit_seconds

    def check_and_apply_extension(self) -> int:
        """Consume pending minutes and return them as extra iterations."""
        try:
            minutes = self.source.take()
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read runtime extension: {e}")
            return 0
        if not minutes or minutes <= 0:
            return 0
        iterations = ceil_div_seconds(minutes * 60, self.unit_seconds)
        logger.info(f"[MARKET MAKER] Extension of {minutes} min applied: +{iterations} iterations")
        return iterations
