"""Maps the loop's error taxonomy to recovery actions."""

from __future__ import annotations

import logging
from enum import Enum

from circular_prompt.utils.exceptions import (
    ContextOverflowError,
    ExecutionFailureError,
    InconsistentStateError,
    LoopCancelledError,
    RateLimitError,
    RetryExhaustedError,
)

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    """Error categories the loop knows how to handle."""
    CONTEXT_OVERFLOW = "context_overflow"
    RATE_LIMITED = "rate_limited"
    EXECUTION_FAILURE = "execution_failure"
    INCONSISTENT_STATE = "inconsistent_state"
    CANCELLED = "cancelled"
    UNEXPECTED = "unexpected"


class RecoveryAction(Enum):
    """What the Thread Manager does about an error."""
    RESTART = "restart"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    ROLLBACK_AND_RETRY = "rollback_and_retry"
    MANUAL_INTERVENTION = "manual_intervention"
    STOP = "stop"
    ESCALATE = "escalate"


_ACTIONS: dict[ErrorKind, RecoveryAction] = {
    ErrorKind.CONTEXT_OVERFLOW: RecoveryAction.RESTART,
    ErrorKind.RATE_LIMITED: RecoveryAction.RETRY_WITH_BACKOFF,
    ErrorKind.EXECUTION_FAILURE: RecoveryAction.ROLLBACK_AND_RETRY,
    ErrorKind.INCONSISTENT_STATE: RecoveryAction.MANUAL_INTERVENTION,
    ErrorKind.CANCELLED: RecoveryAction.STOP,
    ErrorKind.UNEXPECTED: RecoveryAction.ESCALATE,
}


class ErrorPolicy:
    """Taxonomy-driven recovery decisions.

    RateLimited errors that already went through the retry budget arrive
    wrapped in RetryExhaustedError; those escalate to a human.
    """

    def __init__(self, actions: dict[ErrorKind, RecoveryAction] | None = None):
        self.actions = dict(_ACTIONS)
        if actions:
            # Inconsistent state is never auto-resolved
            actions = {
                k: v for k, v in actions.items() if k is not ErrorKind.INCONSISTENT_STATE
            }
            self.actions.update(actions)

    def kind_of(self, error: BaseException) -> ErrorKind:
        if isinstance(error, ContextOverflowError):
            return ErrorKind.CONTEXT_OVERFLOW
        if isinstance(error, RateLimitError):
            return ErrorKind.RATE_LIMITED
        if isinstance(error, RetryExhaustedError) and isinstance(error.last_error, RateLimitError):
            return ErrorKind.RATE_LIMITED
        if isinstance(error, ExecutionFailureError):
            return ErrorKind.EXECUTION_FAILURE
        if isinstance(error, InconsistentStateError):
            return ErrorKind.INCONSISTENT_STATE
        if isinstance(error, LoopCancelledError):
            return ErrorKind.CANCELLED
        return ErrorKind.UNEXPECTED

    def action_for(self, kind: ErrorKind) -> RecoveryAction:
        return self.actions[kind]

    def decide(self, error: BaseException) -> RecoveryAction:
        """Pick the recovery action for ``error``."""
        kind = self.kind_of(error)
        if isinstance(error, RetryExhaustedError):
            action = RecoveryAction.MANUAL_INTERVENTION
        else:
            action = self.action_for(kind)
        logger.debug(f"{type(error).__name__} classified as {kind.value} -> {action.value}")
        return action
