"""
Retry policy for upstream calls.

Provides:
- RetryPolicy (linear or exponential backoff, bounded attempts)
- retry_with_backoff() for one-shot calls
- with_retry decorator

Whether an error is retried is decided by the error taxonomy
(`exceptions.is_retryable`), never by message text.
"""
import asyncio
import random
from dataclasses import dataclass
from enum import Enum
from functools import wraps
from typing import Any, Awaitable, Callable, Optional

from shopsync.exceptions import TransientUpstreamError, is_retryable
from shopsync.observability import get_logger

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class BackoffStrategy(Enum):
    LINEAR = "linear"            # base_delay * attempt
    EXPONENTIAL = "exponential"  # base_delay * 2 ** (attempt - 1)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Configuration for retry behavior.

    `max_retries` is the number of consecutive failures tolerated on one
    operation; the failure that reaches it is not retried.
    """
    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    strategy: BackoffStrategy = BackoffStrategy.LINEAR
    jitter: float = 0.0  # random jitter factor
    honor_retry_after: bool = True

    def compute_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """
        Delay before retrying after the `attempt`-th consecutive failure.

        A server supplied Retry-After wins over the computed delay when it
        is longer.
        """
        if self.strategy is BackoffStrategy.EXPONENTIAL:
            delay = self.base_delay * (2 ** (attempt - 1))
        else:
            delay = self.base_delay * attempt

        if self.jitter:
            delay += delay * self.jitter * random.random()

        if self.honor_retry_after and isinstance(error, TransientUpstreamError):
            if error.retry_after and error.retry_after > delay:
                delay = error.retry_after

        return min(delay, self.max_delay)


DEFAULT_POLICY = RetryPolicy()


async def retry_with_backoff(
    func: Callable[..., Awaitable[Any]],
    *args,
    policy: Optional[RetryPolicy] = None,
    sleep: Sleep = asyncio.sleep,
    **kwargs
) -> Any:
    """
    Execute a coroutine function, retrying transient upstream errors.

    Args:
        func: Async function to execute
        *args: Positional arguments for func
        policy: Retry policy (default: 3 retries, linear 1s backoff)
        sleep: Awaitable sleep used between attempts
        **kwargs: Keyword arguments for func

    Returns:
        Result of func

    Raises:
        The last transient error once retries are exhausted, or the first
        non-retryable error immediately
    """
    policy = policy or DEFAULT_POLICY
    attempt = 0

    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable(e):
                raise

            attempt += 1
            if attempt >= policy.max_retries:
                logger.error(
                    f"All {policy.max_retries} attempts failed",
                    extra={"error": str(e)}
                )
                raise

            delay = policy.compute_delay(attempt, e)
            logger.warning(
                f"Attempt {attempt} failed, retrying in {delay:.2f}s",
                extra={"attempt": attempt, "delay": delay, "error": str(e)}
            )
            await sleep(delay)


def with_retry(policy: Optional[RetryPolicy] = None):
    """
    Decorator applying retry_with_backoff to an async function.

    Usage:
        @with_retry(RetryPolicy(max_retries=2, base_delay=0.5))
        async def probe():
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await retry_with_backoff(func, *args, policy=policy, **kwargs)
        return wrapper
    return decorator
