"""
Bounded retry with exponential backoff and jitter.

Only transient errors (Conflict, Unavailable) are retried; validation errors
surface on the first attempt.
"""

from __future__ import annotations

import functools
import logging
import random
import time
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

from lifesignal.errors import TRANSIENT_ERRORS

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
    Retry timeline with the defaults: immediate, ~20ms, ~40ms, ~80ms, ~160ms.

    Jitter is +/-25% of the computed delay so contending writers on the same
    edge pair spread out instead of colliding again.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        initial_delay_s: float = 0.02,
        max_delay_s: float = 0.5,
        multiplier: float = 2.0,
        jitter: bool = True,
        retryable: Optional[Tuple[Type[BaseException], ...]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.initial_delay_s = initial_delay_s
        self.max_delay_s = max_delay_s
        self.multiplier = multiplier
        self.jitter = jitter
        self.retryable = retryable or TRANSIENT_ERRORS
        self._sleep = sleep

    def calculate_delay(self, attempt: int) -> float:
        """Delay before the retry that follows `attempt` (0-indexed)."""
        delay = min(self.initial_delay_s * (self.multiplier ** attempt), self.max_delay_s)
        if self.jitter:
            spread = delay * 0.25
            delay += random.uniform(-spread, spread)
        return max(delay, 0.0)

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        for attempt in range(self.max_attempts):
            try:
                return fn(*args, **kwargs)
            except self.retryable as e:
                remaining = self.max_attempts - attempt - 1
                if remaining == 0:
                    logger.warning(
                        "retry exhausted after %d attempts: %s", self.max_attempts, e
                    )
                    raise
                delay = self.calculate_delay(attempt)
                logger.debug(
                    "retrying %s in %.3fs (attempt %d/%d): %s",
                    getattr(fn, "__name__", fn), delay, attempt + 1, self.max_attempts, e,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")

    def wrap(self, fn: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return self.call(fn, *args, **kwargs)
        return wrapper


NO_RETRY = RetryPolicy(max_attempts=1)
