"""Retry policies with exponential backoff for circular-prompt.

Provides configurable retry logic with jitter, server-suggested delays and
a cancellation signal that is honoured while sleeping between attempts.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, TypeVar

from circular_prompt.utils.exceptions import (
    CycleError,
    LoopCancelledError,
    RateLimitError,
    RetryExhaustedError,
)

logger = logging.getLogger(__name__)
T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries (seconds)
        max_delay: Maximum delay between retries (seconds)
        exponential_base: Exponential backoff multiplier
        jitter: Add random jitter to prevent thundering herd
        retryable_exceptions: Exception types that trigger retry
        on_retry: Optional callback on each retry attempt
    """

    max_retries: int = 5
    base_delay: float = 2.0
    max_delay: float = 120.0
    exponential_base: float = 2.0
    jitter: bool = True
    jitter_max: float = 0.1  # Max jitter as fraction of delay
    retryable_exceptions: tuple[type[Exception], ...] = field(
        default_factory=lambda: (RateLimitError,)
    )
    on_retry: Callable[[int, Exception, float], None] | None = None


@dataclass
class RetryStats:
    """Statistics for retry operations."""

    attempts: int = 0
    failures: int = 0
    total_delay: float = 0.0
    success: bool = False
    last_error: Exception | None = None


@dataclass
class RetryContext:
    """Context for a retry operation."""

    attempt: int = 0
    start_time: float = field(default_factory=time.time)
    config: RetryConfig = field(default_factory=RetryConfig)
    stats: RetryStats = field(default_factory=RetryStats)

    def calculate_delay(self, error: Exception | None = None) -> float:
        """Calculate delay for next retry attempt.

        A ``reset_after`` hint on a RateLimitError raises the floor of the
        delay; the result is still capped by ``max_delay``.
        """
        delay = min(
            self.config.base_delay * (self.config.exponential_base ** self.attempt),
            self.config.max_delay,
        )

        if isinstance(error, RateLimitError) and error.reset_after:
            delay = min(max(delay, error.reset_after), self.config.max_delay)

        if self.config.jitter:
            jitter_amount = delay * self.config.jitter_max
            delay += random.uniform(-jitter_amount, jitter_amount)

        return max(0, delay)


async def cancellable_sleep(delay: float, cancel_event: asyncio.Event | None) -> None:
    """Sleep for ``delay`` seconds unless ``cancel_event`` fires first.

    Raises:
        LoopCancelledError: If the event is set before or during the sleep.
    """
    if cancel_event is None:
        await asyncio.sleep(delay)
        return

    if cancel_event.is_set():
        raise LoopCancelledError("Cancelled before backoff sleep")

    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise LoopCancelledError("Cancelled during backoff sleep")


class RetryPolicy:
    """Retry policy with exponential backoff.

    Example:
        policy = RetryPolicy(RetryConfig(max_retries=3, base_delay=1.0))
        result = await policy.execute(client.send_and_await, handle)
    """

    # Most recent operations kept by get_stats()
    STATS_HISTORY = 100

    def __init__(
        self,
        config: RetryConfig | None = None,
        cancel_event: asyncio.Event | None = None,
    ):
        self.config = config or RetryConfig()
        self.cancel_event = cancel_event
        self._stats: deque[RetryStats] = deque(maxlen=self.STATS_HISTORY)

    def is_retryable(self, error: Exception) -> bool:
        """Check if an exception should trigger a retry."""
        if isinstance(error, LoopCancelledError):
            return False

        if isinstance(error, self.config.retryable_exceptions):
            return True

        return False

    async def execute(
        self,
        fn: Callable[..., Coroutine[Any, Any, T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Execute a function with retry logic.

        Args:
            fn: Async function to execute
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            Function result

        Raises:
            RetryExhaustedError: If all retries exhausted
            LoopCancelledError: If cancelled while backing off
            Exception: Original exception if not retryable
        """
        ctx = RetryContext(config=self.config)
        last_error: Exception | None = None

        for attempt in range(self.config.max_retries + 1):
            ctx.attempt = attempt
            ctx.stats.attempts += 1

            try:
                result = await fn(*args, **kwargs)
                ctx.stats.success = True
                self._stats.append(ctx.stats)
                return result

            except Exception as e:
                if not self.is_retryable(e):
                    self._stats.append(ctx.stats)
                    raise

                last_error = e
                ctx.stats.last_error = e
                ctx.stats.failures += 1

                if attempt >= self.config.max_retries:
                    logger.debug(f"Max retries ({self.config.max_retries}) exceeded")
                    break

                delay = ctx.calculate_delay(e)
                ctx.stats.total_delay += delay

                logger.info(
                    f"Retry {attempt + 1}/{self.config.max_retries} after "
                    f"{delay:.2f}s delay: {type(e).__name__}: {e}"
                )

                if self.config.on_retry:
                    try:
                        self.config.on_retry(attempt, e, delay)
                    except CycleError:
                        raise
                    except Exception as cb_error:
                        logger.warning(f"Retry callback failed: {cb_error}")

                await cancellable_sleep(delay, self.cancel_event)

        self._stats.append(ctx.stats)
        raise RetryExhaustedError(
            message=f"All {self.config.max_retries} retry attempts exhausted",
            attempts=ctx.stats.attempts,
            last_error=last_error,
        ) from last_error

    def get_stats(self) -> list[RetryStats]:
        """Get statistics for all retry operations."""
        return list(self._stats)

    def reset_stats(self) -> None:
        """Reset statistics."""
        self._stats.clear()
