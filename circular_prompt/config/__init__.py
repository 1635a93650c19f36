"""Configuration for circular-prompt."""

from circular_prompt.config.config import (
    ClassifierConfig,
    ClientConfig,
    CycleConfig,
    LoopConfig,
)
from circular_prompt.config.loader import get_data_dir, load_config

__all__ = [
    "ClassifierConfig",
    "ClientConfig",
    "CycleConfig",
    "LoopConfig",
    "get_data_dir",
    "load_config",
]
