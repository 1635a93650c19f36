"""Model clients for circular-prompt."""

from circular_prompt.client.base import ModelClient, ThreadHandle, TurnResult, UsageSample
from circular_prompt.client.openai import OpenAIChatClient

__all__ = [
    "ModelClient",
    "ThreadHandle",
    "TurnResult",
    "UsageSample",
    "OpenAIChatClient",
]
