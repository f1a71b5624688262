"""
Bounded retry with exponential backoff and jitter for provider calls.

Only :class:`TransientProviderError` is retried. Any other error propagates
on the first attempt, so an item that is gone or a request the provider
rejects never burns the retry budget.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from ..core.config import Config
from ..core.exceptions import RetriesExhaustedError, TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Retry parameters for one connector instance.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Seconds multiplied by ``2 ** attempt``
        max_jitter: Upper bound of the random term added to each delay
        sleep: Coroutine used to wait between attempts
        rng: Source of uniform randoms in ``[0, 1)``
    """
    max_attempts: int = 5
    base_delay: float = 1.0
    max_jitter: float = 1.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)
    rng: Callable[[], float] = field(default=random.random, repr=False)

    @classmethod
    def from_config(cls, config: Config) -> "RetryPolicy":
        """Build a policy from application configuration."""
        return cls(
            max_attempts=config.RETRY_MAX_ATTEMPTS,
            base_delay=config.RETRY_BASE_DELAY_SECONDS,
            max_jitter=config.RETRY_MAX_JITTER_SECONDS,
        )

    def backoff_delay(self, attempt: int) -> float:
        """
        Delay before the attempt following ``attempt``.

        Args:
            attempt: 1-based number of the attempt that just failed

        Returns:
            float: ``base_delay * 2 ** attempt`` plus jitter
        """
        return self.base_delay * (2 ** attempt) + self.rng() * self.max_jitter


async def with_retry(
    action: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    *,
    description: str = "provider request",
) -> T:
    """
    Run ``action`` until it succeeds, a non-transient error occurs, or the
    attempt budget is spent.

    Args:
        action: Zero-argument coroutine factory, called once per attempt
        policy: Retry parameters (defaults to :class:`RetryPolicy`)
        description: Human-readable name used in log lines

    Returns:
        The value returned by the successful attempt

    Raises:
        RetriesExhaustedError: Chained from the last transient error
    """
    policy = policy or RetryPolicy()
    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await action()
        except TransientProviderError as exc:
            if attempt >= attempts:
                logger.error("%s failed after %d attempts: %s", description, attempt, exc)
                raise RetriesExhaustedError(
                    f"{description} failed after {attempt} attempts: {exc}", attempt
                ) from exc
            delay = policy.backoff_delay(attempt)
            logger.info(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                description, attempt, attempts, delay, exc,
            )
            await policy.sleep(delay)
    # Unreachable: the loop either returns or raises.
    raise RetriesExhaustedError(f"{description} failed", attempts)
