"""
Jittered exponential backoff for transient failures.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from cycle_engine.errors import CycleEngineError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for a retry budget."""

    max_attempts: int = 4
    initial_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: float = 0.25  # +/- fraction of the computed delay

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        base = min(self.initial_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter <= 0:
            return base
        r = (rng or random).uniform(-self.jitter, self.jitter)
        return max(0.0, base * (1 + r))


class RetryBudgetExhausted(CycleEngineError):
    """All attempts in a retry budget failed with transient errors."""

    kind = "RetryBudgetExhausted"

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")


def is_transient(exc: BaseException) -> bool:
    """Whether ``exc`` belongs to a retryable class."""
    if isinstance(exc, CycleEngineError):
        return exc.transient
    return isinstance(exc, (asyncio.TimeoutError, ConnectionError))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    name: str = "operation",
    retry_on: Optional[Tuple[Type[BaseException], ...]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or the budget is spent.

    Only transient errors (or those listed in ``retry_on``) are retried;
    anything else propagates on the first failure. CancelledError always
    propagates.

    Raises:
        RetryBudgetExhausted: when every attempt failed transiently
    """
    last_error: Optional[BaseException] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            retryable = isinstance(e, retry_on) if retry_on else is_transient(e)
            if not retryable:
                raise
            last_error = e
            if attempt < policy.max_attempts:
                delay = policy.delay_for(attempt)
                logger.warning(
                    f"{name}: transient failure (attempt {attempt}/{policy.max_attempts}): "
                    f"{e}. Retrying in {delay:.2f}s"
                )
                await sleep(delay)

    raise RetryBudgetExhausted(name, policy.max_attempts, last_error)
