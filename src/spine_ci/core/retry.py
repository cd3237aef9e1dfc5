"""Retry strategies used by spine-ci.

Two places retry in the system:

- The dispatch engine repeats a full pass over the runners with a fixed
  delay, forever, until some runner accepts the commit
  (:class:`ConstantBackoff` with ``max_retries=None``).
- The runner agent re-sends a ``RESULTS`` message with exponential backoff
  when the dispatcher is briefly unreachable (:class:`ExponentialBackoff`).

Example:
    >>> strategy = ExponentialBackoff(max_retries=5, base_delay=1.0, jitter=False)
    >>> [strategy.next_delay(a) for a in range(3)]
    [1.0, 2.0, 4.0]
"""

from __future__ import annotations

import random
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from spine_ci.core.errors import is_retryable

T = TypeVar("T")


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (zero-based)."""
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """Whether another attempt is allowed after ``attempt`` failures."""
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) + jitter

    Only errors for which :func:`~spine_ci.core.errors.is_retryable` holds
    are retried.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier**attempt), self.max_delay)
        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))
        return delay

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        if attempt >= self.max_retries:
            return False
        if error is not None:
            return is_retryable(error)
        return True


@dataclass
class ConstantBackoff(RetryStrategy):
    """Constant delay between attempts. ``max_retries=None`` retries forever."""

    delay: float = 2.0
    max_retries: int | None = None

    def next_delay(self, attempt: int) -> float:
        return self.delay

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        return self.max_retries is None or attempt < self.max_retries


@dataclass
class RetryContext:
    """Runs a callable under a retry strategy.

    ``wait`` performs the delay; pass ``stop_event.wait`` to make the backoff
    interruptible. When ``wait`` returns True the retry loop stops and the last
    error is raised.

    Example:
        >>> ctx = RetryContext(ExponentialBackoff(max_retries=3))
        >>> ctx.run(lambda: send_results())
    """

    strategy: RetryStrategy
    on_retry: Callable[[int, Exception, float], None] | None = None
    wait: Callable[[float], Any] = time.sleep
    attempt: int = field(default=0, init=False)
    last_error: Exception | None = field(default=None, init=False)

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call ``func`` until it succeeds or the strategy gives up.

        Raises:
            The last exception once retries are exhausted.
        """
        while True:
            self.attempt += 1
            try:
                return func(*args, **kwargs)
            except Exception as e:
                self.last_error = e
                if not self.strategy.should_retry(self.attempt, e):
                    raise

                delay = self.strategy.next_delay(self.attempt - 1)
                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)
                if self.wait(delay):
                    raise
