"""Tests for configuration loading."""

from pathlib import Path

import pytest

from circular_prompt.config import ClassifierConfig, CycleConfig, LoopConfig, load_config
from circular_prompt.config.loader import get_config_dir, get_data_dir
from circular_prompt.utils.exceptions import ConfigError


@pytest.fixture(autouse=True)
def isolated_config_home(tmp_path, monkeypatch):
    """Keep the user's real config file out of the tests."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))


class TestLoopConfig:
    """Loop settings."""

    def test_defaults(self):
        """Test default loop settings."""
        config = LoopConfig()
        assert config.threshold == 0.60
        assert config.max_iterations == 50
        assert config.unknown_limit == 2
        assert config.chars_per_token == 4.0

    @pytest.mark.parametrize("threshold", [0.0, 1.5, -1])
    def test_threshold_validated(self, threshold):
        """Test thresholds outside (0, 1] are rejected."""
        with pytest.raises(ValueError):
            LoopConfig(threshold=threshold)

    def test_settings_round_trip(self):
        """Test settings rebuild an equal config."""
        config = LoopConfig(threshold=0.5, max_turns_per_iteration=10)
        assert LoopConfig.model_validate(config.to_settings()) == config


class TestCycleConfig:
    """Top-level configuration."""

    def test_log_level_normalized(self):
        """Test log levels are upper-cased."""
        assert CycleConfig(log_level="debug").log_level == "DEBUG"

    def test_unknown_log_level(self):
        """Test unknown log levels are rejected."""
        with pytest.raises(ValueError):
            CycleConfig(log_level="LOUD")

    def test_missing_api_key_reported(self):
        """Test a missing API key is reported."""
        assert CycleConfig().validate_runtime()


class TestLoadConfig:
    """Layered config loading."""

    def test_defaults_and_state_dir(self, tmp_path):
        """Test defaults and the default state directory."""
        config = load_config(cwd=tmp_path, environ={})

        assert config.loop.threshold == 0.60
        assert config.state_dir == tmp_path / ".circular-prompt" / "state"
        assert config.state_dir == get_data_dir(tmp_path)

    def test_project_file(self, tmp_path):
        """Test the project config file is read."""
        project = tmp_path / ".circular-prompt"
        project.mkdir()
        (project / "config.toml").write_text("[loop]\nthreshold = 0.5\n\n[client]\nmodel = 'm1'\n")

        config = load_config(cwd=tmp_path, environ={})

        assert config.loop.threshold == 0.5
        assert config.client.model == "m1"

    def test_user_file_below_project_file(self, tmp_path):
        """Test the project file overrides the user file."""
        user_dir = get_config_dir()
        user_dir.mkdir(parents=True)
        (user_dir / "config.toml").write_text("[loop]\nthreshold = 0.4\nmax_iterations = 7\n")
        project = tmp_path / ".circular-prompt"
        project.mkdir()
        (project / "config.toml").write_text("[loop]\nthreshold = 0.5\n")

        config = load_config(cwd=tmp_path, environ={})

        assert config.loop.threshold == 0.5
        assert config.loop.max_iterations == 7

    def test_environment_overrides_files(self, tmp_path):
        """Test environment variables override config files."""
        extra = tmp_path / "extra.toml"
        extra.write_text("[loop]\nthreshold = 0.5\n")

        config = load_config(
            config_file=extra,
            cwd=tmp_path,
            environ={
                "CIRCULAR_PROMPT_THRESHOLD": "0.7",
                "CIRCULAR_PROMPT_MODEL": "gpt-test",
                "CIRCULAR_PROMPT_STATE_DIR": str(tmp_path / "s"),
            },
        )

        assert config.loop.threshold == 0.7
        assert config.client.model == "gpt-test"
        assert config.state_dir == tmp_path / "s"

    def test_overrides_win(self, tmp_path):
        """Test explicit overrides beat the environment."""
        config = load_config(
            cwd=tmp_path,
            environ={"CIRCULAR_PROMPT_THRESHOLD": "0.7"},
            overrides={"loop": {"threshold": 0.65}},
        )
        assert config.loop.threshold == 0.65

    def test_openai_key_fallback(self, tmp_path):
        """Test OPENAI_API_KEY is used when no key is configured."""
        config = load_config(cwd=tmp_path, environ={"OPENAI_API_KEY": "sk-test"})
        assert config.client.api_key == "sk-test"
        assert config.validate_runtime() == []

    def test_invalid_value(self, tmp_path):
        """Test an invalid value raises ConfigError."""
        with pytest.raises(ConfigError):
            load_config(cwd=tmp_path, environ={"CIRCULAR_PROMPT_THRESHOLD": "2"})

    def test_missing_explicit_file(self, tmp_path):
        """Test a missing --config file raises ConfigError."""
        with pytest.raises(ConfigError):
            load_config(config_file=tmp_path / "nope.toml", cwd=tmp_path, environ={})

    def test_bad_toml(self, tmp_path):
        """Test malformed TOML raises ConfigError."""
        bad = tmp_path / "bad.toml"
        bad.write_text("[loop\nthreshold = ")
        with pytest.raises(ConfigError):
            load_config(config_file=bad, cwd=tmp_path, environ={})


class TestClassifierConfig:
    """Phrase data files."""

    def test_json_file(self, tmp_path):
        """Test phrase data loads from JSON."""
        path = tmp_path / "phrases.json"
        path.write_text('{"success_phrases": ["finito"], "parse_status_block": false}')

        config = ClassifierConfig.from_file(path)

        assert config.success_phrases == ["finito"]
        assert config.parse_status_block is False

    def test_blank_phrase_rejected(self):
        """Test blank phrases are rejected."""
        with pytest.raises(ValueError):
            ClassifierConfig(success_phrases=["  "])

    def test_unreadable_file(self, tmp_path):
        """Test a missing phrase file raises ConfigError."""
        with pytest.raises(ConfigError):
            ClassifierConfig.from_file(Path(tmp_path / "missing.toml"))
