"""Termination classifier for agent responses.

Maps free text to SUCCESS / CONTINUE / UNKNOWN. Phrase data is supplied
from configuration so the oracle can be tuned or replaced without touching
the loop.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable

from circular_prompt.config.config import ClassifierConfig
from circular_prompt.loop.models import Classification

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_FENCED_JSON = re.compile(r"```json\s*(\{.*?\})\s*```", re.DOTALL)

_DONE_STATUSES = {"complete", "completed", "done", "success"}
_WORKING_STATUSES = {"in_progress", "in progress", "continue", "working"}


def _normalize(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip().lower()


class TerminationClassifier:
    """Three-valued oracle deciding whether the agent is finished.

    SUCCESS is checked first against the whole response and dominates: a
    reply that declares completion and also asks "continue?" is SUCCESS.
    """

    def __init__(
        self,
        success_phrases: Iterable[str],
        continue_phrases: Iterable[str],
        success_patterns: Iterable[str] = (),
        continue_patterns: Iterable[str] = (),
        parse_status_block: bool = True,
    ):
        """Initialize the classifier.

        Args:
            success_phrases: Phrases signalling the task is done.
            continue_phrases: Phrases signalling more work in this thread.
            success_patterns: Regular expressions signalling the task is done.
            continue_patterns: Regular expressions signalling more work.
            parse_status_block: Also honour a JSON status block in the reply.
        """
        self.success_phrases = tuple(_normalize(p) for p in success_phrases if p.strip())
        self.continue_phrases = tuple(_normalize(p) for p in continue_phrases if p.strip())
        self.success_patterns = tuple(re.compile(p, re.IGNORECASE) for p in success_patterns)
        self.continue_patterns = tuple(re.compile(p, re.IGNORECASE) for p in continue_patterns)
        self.parse_status_block = parse_status_block

    @classmethod
    def from_config(cls, config: ClassifierConfig) -> TerminationClassifier:
        return cls(
            success_phrases=config.success_phrases,
            continue_phrases=config.continue_phrases,
            success_patterns=config.success_patterns,
            continue_patterns=config.continue_patterns,
            parse_status_block=config.parse_status_block,
        )

    def classify(self, text: str) -> Classification:
        """Classify a response.

        Args:
            text: The agent's full response text.

        Returns:
            SUCCESS, CONTINUE or UNKNOWN.
        """
        if not text or not text.strip():
            return Classification.UNKNOWN

        normalized = _normalize(text)
        status = self._status_block(text) if self.parse_status_block else None

        if self._matches(normalized, text, self.success_phrases, self.success_patterns):
            return Classification.SUCCESS
        if status is Classification.SUCCESS:
            return Classification.SUCCESS

        if self._matches(normalized, text, self.continue_phrases, self.continue_patterns):
            return Classification.CONTINUE
        if status is Classification.CONTINUE:
            return Classification.CONTINUE

        logger.debug("No termination phrase matched; classifying as UNKNOWN")
        return Classification.UNKNOWN

    def _matches(
        self,
        normalized: str,
        original: str,
        phrases: tuple[str, ...],
        patterns: tuple[re.Pattern[str], ...],
    ) -> bool:
        if any(phrase in normalized for phrase in phrases):
            return True
        return any(pattern.search(original) for pattern in patterns)

    def _status_block(self, text: str) -> Classification | None:
        """Read a structured status block, if the reply carries one."""
        data = self._try_parse_json(text)
        if not data:
            return None

        exit_signal = data.get("exit_signal", data.get("EXIT_SIGNAL"))
        if exit_signal is True or str(exit_signal).lower() == "true":
            return Classification.SUCCESS

        status = str(data.get("status", "")).lower()
        if status in _DONE_STATUSES:
            return Classification.SUCCESS
        if status in _WORKING_STATUSES:
            return Classification.CONTINUE
        return None

    def _try_parse_json(self, text: str) -> dict[str, Any] | None:
        """Try to parse a fenced JSON block, or the whole response, as JSON.

        Args:
            text: Response text to parse.

        Returns:
            Parsed object or None if there is no JSON object.
        """
        match = _FENCED_JSON.search(text)
        if match:
            try:
                data = json.loads(match.group(1))
                return data if isinstance(data, dict) else None
            except json.JSONDecodeError:
                pass

        stripped = text.strip()
        if stripped.startswith("{"):
            try:
                data = json.loads(stripped)
                return data if isinstance(data, dict) else None
            except json.JSONDecodeError:
                pass

        return None
