"""Configuration models for circular-prompt."""

from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

from circular_prompt.utils.exceptions import ConfigError

# Phrase data for the termination classifier. Matched case-insensitively
# against the whole response after whitespace is collapsed.
DEFAULT_SUCCESS_PHRASES: tuple[str, ...] = (
    "no work left to do",
    "nothing left to do",
    "no remaining work",
    "no further work needed",
    "no further changes needed",
    "all tasks are complete",
    "all tasks complete",
    "all tasks have been completed",
    "the task is complete",
    "task is complete",
    "everything is done",
    "[done]",
    "exit_signal: true",
)

DEFAULT_CONTINUE_PHRASES: tuple[str, ...] = (
    "do you want me to continue",
    "would you like me to continue",
    "shall i continue",
    "should i continue",
    "shall i proceed",
    "should i proceed",
    "want me to proceed",
    "i will continue",
    "continuing with",
    "next steps",
    "remaining work",
    "still to do",
)


class ClassifierConfig(BaseModel):
    """Phrase data for the termination classifier."""

    success_phrases: list[str] = Field(default_factory=lambda: list(DEFAULT_SUCCESS_PHRASES))
    continue_phrases: list[str] = Field(default_factory=lambda: list(DEFAULT_CONTINUE_PHRASES))
    success_patterns: list[str] = Field(default_factory=list)
    continue_patterns: list[str] = Field(default_factory=list)
    parse_status_block: bool = True

    @field_validator("success_phrases", "continue_phrases")
    @classmethod
    def phrases_not_blank(cls, v: list[str]) -> list[str]:
        cleaned = [p for p in (s.strip() for s in v) if p]
        if len(cleaned) != len(v):
            raise ValueError("Phrases cannot be empty or whitespace only")
        return cleaned

    @classmethod
    def from_file(cls, path: Path) -> ClassifierConfig:
        """Load phrase data from a TOML or JSON file.

        A TOML file may hold the fields at top level or under a
        ``[classifier]`` table.

        Raises:
            ConfigError: If the file cannot be read or parsed.
        """
        try:
            raw = path.read_bytes()
            if path.suffix == ".json":
                data = json.loads(raw)
            else:
                data = tomllib.loads(raw.decode("utf-8"))
        except (OSError, ValueError) as e:
            raise ConfigError(
                f"Failed to read classifier phrases: {e}", config_file=str(path), cause=e
            ) from e

        if isinstance(data, dict) and isinstance(data.get("classifier"), dict):
            data = data["classifier"]
        return cls.model_validate(data)


class ClientConfig(BaseModel):
    """Settings for the OpenAI-compatible model client."""

    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o"
    api_key: str | None = None
    temperature: float = 0.2
    max_tokens: int = 4096
    timeout: float = 300.0
    continue_message: str = "Continue working on the task."

    @field_validator("max_tokens")
    @classmethod
    def positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class LoopConfig(BaseModel):
    """Parameters of the circular prompting loop."""

    threshold: float = 0.60
    max_iterations: int = 50
    unknown_limit: int = 2
    max_turns_per_iteration: int | None = None

    # Usage estimation when the client reports nothing
    chars_per_token: float = 4.0
    context_window: int = 200_000
    sample_interval: int = 1

    # Rate limit recovery
    rate_limit_max_retries: int = 5
    rate_limit_base_delay: float = 2.0
    rate_limit_max_delay: float = 120.0

    # Execution failure recovery
    execution_max_retries: int = 3

    @field_validator("threshold")
    @classmethod
    def threshold_in_range(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("threshold must be in (0, 1]")
        return v

    @field_validator("max_iterations", "unknown_limit", "sample_interval", "context_window")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("max_turns_per_iteration")
    @classmethod
    def turns_positive(cls, v: int | None) -> int | None:
        if v is not None and v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("chars_per_token")
    @classmethod
    def ratio_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("chars_per_token must be positive")
        return v

    @field_validator("rate_limit_max_retries", "execution_max_retries")
    @classmethod
    def non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    def to_settings(self) -> dict[str, Any]:
        """Parameters persisted with a run so ``resume`` reuses them."""
        return self.model_dump()


class CycleConfig(BaseModel):
    """Top-level configuration."""

    loop: LoopConfig = Field(default_factory=LoopConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    state_dir: Path | None = None
    log_level: str = "WARNING"

    @field_validator("log_level")
    @classmethod
    def known_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    def validate_runtime(self) -> list[str]:
        """Check settings that only matter when a real client is used.

        Returns:
            List of human-readable problems, empty when runnable.
        """
        errors = []
        if not self.client.api_key:
            errors.append(
                "No API key configured. Set CIRCULAR_PROMPT_API_KEY or OPENAI_API_KEY."
            )
        return errors
