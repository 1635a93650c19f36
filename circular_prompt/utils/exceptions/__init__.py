from .base import CycleError, ModelClientError
from .config import ConfigError
from .resource import ContextOverflowError, ExecutionFailureError, RateLimitError
from .resilience import LoopCancelledError, RetryExhaustedError
from .state import DriftError, InconsistentStateError, StateCorruptError

__all__ = [
    "CycleError",
    "ModelClientError",
    "ConfigError",
    "RateLimitError",
    "ContextOverflowError",
    "ExecutionFailureError",
    "RetryExhaustedError",
    "LoopCancelledError",
    "InconsistentStateError",
    "DriftError",
    "StateCorruptError",
]
