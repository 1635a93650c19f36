from typing import Any
from .base import CycleError


class InconsistentStateError(CycleError):
    """Persisted progress cannot be trusted; needs a human."""

    def __init__(self, message: str, state_path: str | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", {}) or {}
        if state_path:
            details["state_path"] = state_path

        # Subclasses supply their own code
        code = kwargs.pop("code", "INCONSISTENT_STATE")

        super().__init__(
            message=message, code=code, details=details, retryable=False, **kwargs
        )
        self.state_path = state_path


class DriftError(InconsistentStateError):
    """Stored task hashes do not match the live TaskSpec."""

    def __init__(
        self,
        field: str,
        stored: str,
        live: str,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        details.update({"field": field, "stored": stored[:12], "live": live[:12]})
        super().__init__(
            message=f"Task drift detected: {field} changed since the run was started",
            code="TASK_DRIFT",
            details=details,
            **kwargs,
        )
        self.field = field
        self.stored = stored
        self.live = live


class StateCorruptError(InconsistentStateError):
    """The state file is unreadable or violates its invariants."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message=message, code="STATE_CORRUPT", **kwargs)
