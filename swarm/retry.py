"""
Retry and cancellation primitives shared by every trading engine.

A step is an async callable returning a truthy value (usually a transaction
signature) on success. Falsy results and exceptions both count as a failed
attempt. Once the attempts are used up the step is failed for that wallet
only: ``with_retry`` returns ``None`` and never raises.

Cancellation is cooperative. Engines check ``token.cancelled`` at iteration
boundaries and sleep through ``token.sleep`` which wakes early on cancel.
An attempt already running inside ``with_retry`` is not interrupted, so a
stop settles within one attempt.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

from utils import logger

DEFAULT_MAX_ATTEMPTS = 50
DEFAULT_RETRY_DELAY = 2.0


class CancellationToken:
    """One-shot stop signal for a single bot run. Never cleared once set."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep up to ``seconds``; returns True if the sleep completed, False
        if it was cut short (or skipped) because the token was cancelled.
        """
        if self._event.is_set():
            return False
        if seconds <= 0:
            await asyncio.sleep(0)
            return not self._event.is_set()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False


def _is_falsy(result: Any) -> bool:
    return not result


async def with_retry(
    step: Callable[[], Awaitable[Any]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    delay: float = DEFAULT_RETRY_DELAY,
    description: str = "step",
) -> Optional[Any]:
    """
    Run ``step`` until it returns a truthy value or ``max_attempts`` runs out.

    Returns the step's result, or ``None`` when every attempt failed.
    """

    def _log_retry(state: RetryCallState):
        outcome = state.outcome
        if outcome is not None and outcome.failed:
            reason = repr(outcome.exception())
        else:
            reason = "no result"
        logger.debug(
            f"{description} attempt {state.attempt_number}/{max_attempts} failed ({reason}), "
            f"retrying in {delay}s"
        )

    def _give_up(state: RetryCallState):
        logger.warning(f"{description} failed after {state.attempt_number} attempts")
        return None

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_fixed(delay),
        retry=retry_if_result(_is_falsy) | retry_if_exception_type(Exception),
        before_sleep=_log_retry,
        retry_error_callback=_give_up,
    )

    # Steps are usually lambdas returning a coroutine; await them in a real coroutine function
    async def _attempt():
        return await step()

    return await retrying(_attempt)

