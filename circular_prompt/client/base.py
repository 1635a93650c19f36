"""Model client interface consumed by the loop."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from circular_prompt.loop.models import TaskSpec


@dataclass
class ThreadHandle:
    """Opaque reference to one conversation thread."""

    thread_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    task_id: str = ""
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class UsageSample:
    """Context usage reported by the model for one turn."""

    ratio: float
    prompt_tokens: int | None = None
    completion_tokens: int | None = None


@dataclass
class TurnResult:
    """Reply from the agent for one turn.

    ``sent_text`` is what the client sent on this turn beyond the injected
    TaskSpec, used for usage estimation when no UsageSample is reported.
    """

    text: str
    usage: UsageSample | None = None
    sent_text: str = ""
    files_modified: list[str] = field(default_factory=list)
    issues_resolved: int = 0
    issues_discovered: int = 0


class ModelClient(ABC):
    """Abstract base class for AI model clients."""

    @abstractmethod
    async def open_thread(self, task: TaskSpec) -> ThreadHandle:
        """Start a fresh conversation with the TaskSpec injected verbatim."""
        pass

    @abstractmethod
    async def send_and_await(self, handle: ThreadHandle) -> TurnResult:
        """Run one turn on ``handle`` and return the agent's reply.

        Raises:
            RateLimitError: The provider throttled the request.
            ContextOverflowError: The conversation no longer fits the window.
        """
        pass

    async def close_thread(self, handle: ThreadHandle) -> None:
        """Release resources held for ``handle``."""
        return None

    async def aclose(self) -> None:
        """Shut the client down."""
        return None

    async def __aenter__(self) -> ModelClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
