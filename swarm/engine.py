"""Shared plumbing for the trading engines."""

from typing import Any, Awaitable, Callable, Optional

from config import Config
from exchange import ExchangeAdapter
from logging_utils import MetricsCollector
from utils import logger, format_address
from swarm.retry import with_retry, DEFAULT_MAX_ATTEMPTS


class TradingEngine:
    """Base class: exchange, config, metrics and the per-step retry policy."""

    name = "ENGINE"

    def __init__(
        self,
        exchange: ExchangeAdapter,
        config: Config,
        metrics: Optional[MetricsCollector] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.exchange = exchange
        self.config = config
        self.metrics = metrics or MetricsCollector()
        self.max_attempts = max_attempts

    @property
    def mint(self) -> str:
        return self.config.token_mint

    async def retry(
        self,
        operation: str,
        public_id: str,
        step: Callable[[], Awaitable[Any]],
        max_attempts: Optional[int] = None,
    ) -> Optional[Any]:
        """Run one wallet step under the retry policy and count the outcome."""
        result = await with_retry(
            step,
            max_attempts=max_attempts or self.max_attempts,
            delay=self.config.retry_delay_seconds,
            description=f"[{self.name}] {operation} {format_address(public_id)}",
        )
        self.metrics.record(operation, success=bool(result))
        return result

    def exhausted(self, public_id: str, reason: str):
        logger.info(f"[{self.name}] {format_address(public_id)} exhausted: {reason}")
        self.metrics.record("exhausted")
