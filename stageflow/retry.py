"""Retry policy with exponential backoff, shared by timers and error recovery."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Type

AsyncFn = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    All delays are in milliseconds.

    Attributes:
        max_attempts: Maximum number of attempts including the first (must be >= 1)
        base_delay: Delay before the first retry
        max_delay: Maximum delay cap
        backoff: Multiplier applied to the delay after each retry
        jitter: Random jitter as fraction of delay (0.0 to 1.0)
        retry_on: Tuple of exception types to retry on
    """

    max_attempts: int = 3
    base_delay: float = 100.0
    max_delay: float = 2000.0
    backoff: float = 2.0
    jitter: float = 0.0
    retry_on: tuple[Type[BaseException], ...] = (Exception,)

    def validate(self) -> "RetryConfig":
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff < 1.0:
            raise ValueError("backoff must be >= 1.0")
        if not (0.0 <= self.jitter <= 1.0):
            raise ValueError("jitter must be between 0.0 and 1.0")
        return self

    @property
    def max_retries(self) -> int:
        return self.max_attempts - 1

    def delay_for(self, retry: int) -> float:
        """Delay before retry number ``retry`` (0-based): base * backoff**retry, capped."""
        delay = min(self.max_delay, self.base_delay * (self.backoff ** retry))
        if self.jitter and delay > 0:
            delay = min(self.max_delay, delay + delay * self.jitter * random.random())
        return delay

    def delays(self) -> List[float]:
        """The full delay table, one entry per retry."""
        return [self.delay_for(i) for i in range(self.max_retries)]


# Timer-fired transitions: 3 retries at 1s, 2s, 4s (cap 10s).
TIMER_RETRY = RetryConfig(max_attempts=4, base_delay=1000.0, max_delay=10000.0, backoff=2.0)


def retry_async(config: RetryConfig) -> Callable[[AsyncFn], AsyncFn]:
    """Decorator that retries an async function with exponential backoff.

    Example:
        @retry_async(RetryConfig(max_attempts=3, base_delay=200))
        async def flaky_condition(ctx):
            ...
    """
    config.validate()

    def decorator(fn: AsyncFn) -> AsyncFn:
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0

            while True:
                try:
                    return await fn(*args, **kwargs)
                except config.retry_on:
                    if attempt >= config.max_retries:
                        raise

                    delay = config.delay_for(attempt)
                    if delay > 0:
                        await asyncio.sleep(delay / 1000.0)
                    attempt += 1

        return wrapper  # type: ignore[return-value]

    return decorator
