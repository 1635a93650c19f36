"""circular-prompt - keep an agent working on one task across fresh context windows."""

__version__ = "1.0.0"

# Core exports
from circular_prompt.config import CycleConfig, LoopConfig, load_config

from circular_prompt.loop import (
    ContextMonitor,
    LoopSupervisor,
    ProgressState,
    ProgressStore,
    TaskSpec,
    TerminationClassifier,
    ThreadManager,
)

from circular_prompt.client import ModelClient, OpenAIChatClient

__all__ = [
    "__version__",
    # Config
    "CycleConfig",
    "LoopConfig",
    "load_config",
    # Loop
    "ContextMonitor",
    "LoopSupervisor",
    "ProgressState",
    "ProgressStore",
    "TaskSpec",
    "TerminationClassifier",
    "ThreadManager",
    # Client
    "ModelClient",
    "OpenAIChatClient",
]
