"""Terminal output."""

from circular_prompt.ui.console import get_console
from circular_prompt.ui.status import StatusDisplay

__all__ = [
    "StatusDisplay",
    "get_console",
]
