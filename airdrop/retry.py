"""
Retry policy shared by every network-calling collector.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Tuple, Type

import requests
from web3.exceptions import Web3Exception

from .errors import NetworkFetchError, SkipLimitExceeded

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = (
    NetworkFetchError,
    requests.exceptions.RequestException,
    asyncio.TimeoutError,
    ConnectionError,
    Web3Exception,
)


@dataclass
class RetryPolicy:
    """Bounded attempts with exponential backoff and jitter.

    Args:
        max_attempts: Total attempts including the first one
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound for a single delay
        backoff: Multiplier applied per attempt
        jitter: Relative jitter, e.g. 0.15 = +/-15%
    """
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff: float = 2.0
    jitter: float = 0.15
    retry_on: Tuple[Type[BaseException], ...] = field(default=RETRYABLE_ERRORS)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = min(self.base_delay * (self.backoff ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= 1 + random.uniform(-self.jitter, self.jitter)
        return max(0.0, delay)

    async def run(self, func: Callable[..., Awaitable[Any]], *args,
                  description: str = "request", **kwargs) -> Any:
        """Await `func(*args, **kwargs)`, retrying retryable failures.

        Raises:
            NetworkFetchError: once all attempts are exhausted
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await func(*args, **kwargs)
            except SkipLimitExceeded:
                # not transient, the caller splits the window instead
                raise
            except self.retry_on as e:
                if attempt == self.max_attempts:
                    raise NetworkFetchError(
                        f"{description} failed after {attempt} attempts: {e}",
                        metadata={"attempts": attempt},
                        cause=e,
                    ) from e
                delay = self.delay_for(attempt)
                logger.warning(f"{description} failed (attempt {attempt}/{self.max_attempts}): {e}; "
                               f"retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
        raise RuntimeError("unreachable")
