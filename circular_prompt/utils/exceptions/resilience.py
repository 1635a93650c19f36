from typing import Any
from .base import CycleError


class RetryExhaustedError(CycleError):
    """All retry attempts exhausted."""

    def __init__(
        self,
        message: str,
        attempts: int,
        last_error: Exception | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        details["attempts"] = attempts
        if last_error:
            details["last_error"] = str(last_error)
            details["last_error_type"] = type(last_error).__name__
        super().__init__(
            message=message, code="RETRY_EXHAUSTED", details=details, retryable=False, **kwargs
        )
        self.attempts = attempts
        self.last_error = last_error


class LoopCancelledError(CycleError):
    """The loop observed its cancellation signal while suspended."""

    def __init__(self, message: str = "Loop cancelled", **kwargs: Any) -> None:
        super().__init__(message=message, code="CANCELLED", retryable=False, **kwargs)
