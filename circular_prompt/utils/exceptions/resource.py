from typing import Any
from .base import CycleError


class RateLimitError(CycleError):
    """Rate limit exceeded."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        limit: int | None = None,
        reset_after: float | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if limit is not None:
            details["limit"] = limit
        if reset_after is not None:
            details["reset_after_seconds"] = reset_after
        super().__init__(
            message=message, code="RATE_LIMIT_EXCEEDED", details=details, retryable=True, **kwargs
        )
        self.limit = limit
        self.reset_after = reset_after


class ContextOverflowError(CycleError):
    """Context window usage went past 100% before a scheduled restart."""

    def __init__(
        self,
        message: str = "Context window exceeded",
        usage: float | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if usage is not None:
            details["usage"] = round(usage, 4)
        super().__init__(
            message=message, code="CONTEXT_OVERFLOW", details=details, retryable=True, **kwargs
        )
        self.usage = usage


class ExecutionFailureError(CycleError):
    """The execution collaborator reported a failed change."""

    def __init__(
        self,
        message: str,
        files: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if files:
            details["files"] = list(files)
        super().__init__(
            message=message, code="EXECUTION_FAILED", details=details, retryable=True, **kwargs
        )
        self.files = list(files or [])
