"""Resilience patterns for circular-prompt.

Provides retry policies with exponential backoff and a cancellation-aware
sleep used by the loop's wait-and-retry recovery.
"""

from circular_prompt.resilience.retry import (
    RetryConfig,
    RetryContext,
    RetryPolicy,
    RetryStats,
    cancellable_sleep,
)

__all__ = [
    "RetryPolicy",
    "RetryConfig",
    "RetryContext",
    "RetryStats",
    "cancellable_sleep",
]
