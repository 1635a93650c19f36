"""Configuration loading: TOML files, environment, then explicit overrides."""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from circular_prompt.config.config import CycleConfig
from circular_prompt.utils.exceptions import ConfigError

logger = logging.getLogger(__name__)

APP_DIR_NAME = "circular-prompt"
PROJECT_DIR_NAME = ".circular-prompt"
ENV_PREFIX = "CIRCULAR_PROMPT_"

# Environment variable -> (section, key)
_ENV_OVERRIDES: dict[str, tuple[str | None, str]] = {
    "THRESHOLD": ("loop", "threshold"),
    "MAX_ITERATIONS": ("loop", "max_iterations"),
    "UNKNOWN_LIMIT": ("loop", "unknown_limit"),
    "CHARS_PER_TOKEN": ("loop", "chars_per_token"),
    "CONTEXT_WINDOW": ("loop", "context_window"),
    "MODEL": ("client", "model"),
    "BASE_URL": ("client", "base_url"),
    "API_KEY": ("client", "api_key"),
    "STATE_DIR": (None, "state_dir"),
    "LOG_LEVEL": (None, "log_level"),
}


def get_config_dir() -> Path:
    """User-level configuration directory."""
    base = os.environ.get("XDG_CONFIG_HOME")
    root = Path(base) if base else Path.home() / ".config"
    return root / APP_DIR_NAME


def get_data_dir(cwd: Path | None = None) -> Path:
    """Default directory holding one state file per task."""
    return (cwd or Path.cwd()) / PROJECT_DIR_NAME / "state"


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Failed to read {path}: {e}", config_file=str(path), cause=e) from e


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


def _env_overrides(environ: dict[str, str]) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for suffix, (section, key) in _ENV_OVERRIDES.items():
        value = environ.get(ENV_PREFIX + suffix)
        if value is None or value == "":
            continue
        target = data.setdefault(section, {}) if section else data
        target[key] = value

    # Fall back to the conventional variable for the key
    if "OPENAI_API_KEY" in environ and not environ.get(ENV_PREFIX + "API_KEY"):
        data.setdefault("client", {})["api_key"] = environ["OPENAI_API_KEY"]
    return data


def load_config(
    config_file: Path | None = None,
    cwd: Path | None = None,
    overrides: dict[str, Any] | None = None,
    environ: dict[str, str] | None = None,
) -> CycleConfig:
    """Load configuration from every source.

    Precedence, lowest first: defaults, user config file, project config
    file, ``config_file``, environment variables, ``overrides``.

    Args:
        config_file: Explicit TOML file (must exist if given).
        cwd: Project directory; defaults to the current directory.
        overrides: Nested dict of values from the command line.
        environ: Environment mapping; defaults to ``os.environ``.

    Returns:
        Validated configuration.

    Raises:
        ConfigError: If a file cannot be parsed or values are invalid.
    """
    cwd = cwd or Path.cwd()
    environ = dict(os.environ) if environ is None else environ
    data: dict[str, Any] = {}

    candidates = [
        get_config_dir() / "config.toml",
        cwd / PROJECT_DIR_NAME / "config.toml",
    ]
    for path in candidates:
        if path.is_file():
            logger.debug(f"Loading config from {path}")
            data = _merge(data, _read_toml(path))

    if config_file is not None:
        if not config_file.is_file():
            raise ConfigError(f"Config file not found: {config_file}", config_file=str(config_file))
        data = _merge(data, _read_toml(config_file))

    data = _merge(data, _env_overrides(environ))
    if overrides:
        data = _merge(data, overrides)

    try:
        config = CycleConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}", cause=e) from e

    if config.state_dir is None:
        config.state_dir = get_data_dir(cwd)
    return config
