"""Circular prompting loop."""

from circular_prompt.loop.classifier import TerminationClassifier
from circular_prompt.loop.context_monitor import ContextMonitor
from circular_prompt.loop.error_policy import ErrorKind, ErrorPolicy, RecoveryAction
from circular_prompt.loop.models import (
    BlockedReason,
    Classification,
    ContextSample,
    ErrorRecord,
    IterationRecord,
    ProgressState,
    RunStatus,
    SampleSource,
    TaskSpec,
    TerminationReason,
)
from circular_prompt.loop.progress_store import ProgressStore, state_path_for
from circular_prompt.loop.supervisor import LoopSupervisor
from circular_prompt.loop.thread_manager import LoopPhase, ThreadManager

__all__ = [
    "BlockedReason",
    "Classification",
    "ContextMonitor",
    "ContextSample",
    "ErrorKind",
    "ErrorPolicy",
    "ErrorRecord",
    "IterationRecord",
    "LoopPhase",
    "LoopSupervisor",
    "ProgressState",
    "ProgressStore",
    "RecoveryAction",
    "RunStatus",
    "SampleSource",
    "TaskSpec",
    "TerminationClassifier",
    "TerminationReason",
    "ThreadManager",
    "state_path_for",
]
