"""Tests for the command line interface."""

import asyncio

import orjson
import pytest
from click.testing import CliRunner

import circular_prompt.main as cli_main
from circular_prompt.loop.models import ProgressState, TaskSpec, TerminationReason
from circular_prompt.loop.progress_store import ProgressStore, state_path_for

from tests.conftest import ScriptedClient, reply


@pytest.fixture(autouse=True)
def environment(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    for name in ("CIRCULAR_PROMPT_API_KEY", "CIRCULAR_PROMPT_THRESHOLD", "CIRCULAR_PROMPT_STATE_DIR"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def prompt_file(tmp_path):
    path = tmp_path / "PROMPT.md"
    path.write_text("Refactor the parser.")
    return path


@pytest.fixture
def context_file(tmp_path):
    path = tmp_path / "arch.md"
    path.write_text("The parser lives in src/parser.py.")
    return path


@pytest.fixture
def use_script(monkeypatch):
    """Route the CLI to a scripted model client."""

    def install(script):
        client = ScriptedClient(script)
        monkeypatch.setattr(cli_main, "build_client", lambda config, context_window: client)
        return client

    return install


def start_args(prompt_file, context_file, state_dir, *extra):
    return [
        "start",
        "--prompt", str(prompt_file),
        "--context", str(context_file),
        "--state-dir", str(state_dir),
        "--task-id", "parser",
        *extra,
    ]


def save_state(state_path, state):
    asyncio.run(ProgressStore(state_path).save(state))


class TestStart:
    """The start command."""

    def test_complete_run_exits_zero(
        self, runner, prompt_file, context_file, tmp_path, use_script
    ):
        """Test a completed run exits 0 and writes the state."""
        client = use_script(
            [
                reply("3 files changed, do you want me to continue?", usage=0.45),
                reply("More fixes. Next steps: lexer.", usage=0.62),
                reply("There is no work left to do.", usage=0.30),
            ]
        )
        state_dir = tmp_path / "state"

        result = runner.invoke(cli_main.cli, start_args(prompt_file, context_file, state_dir))

        assert result.exit_code == 0, result.output
        data = orjson.loads(state_path_for(state_dir, "parser").read_bytes())
        assert data["status"] == "complete"
        assert data["total_iterations"] == 2
        assert len(client.opened) == 2
        assert client.opened[0].base_context.startswith("--- arch.md ---")

    def test_blocked_run_exits_three(
        self, runner, prompt_file, context_file, tmp_path, use_script
    ):
        """Test a blocked run exits 3."""
        use_script([reply("Hmm.", usage=0.1), reply("Ok.", usage=0.1)])

        result = runner.invoke(
            cli_main.cli, start_args(prompt_file, context_file, tmp_path / "state")
        )

        assert result.exit_code == 3
        assert "termination_ambiguous" in result.output

    def test_threshold_option(self, runner, prompt_file, context_file, tmp_path, use_script):
        """Test --threshold is applied and persisted."""
        use_script([reply("next steps", usage=0.3), reply("[done]", usage=0.1)])
        state_dir = tmp_path / "state"

        result = runner.invoke(
            cli_main.cli,
            start_args(prompt_file, context_file, state_dir, "--threshold", "0.25"),
        )

        assert result.exit_code == 0
        data = orjson.loads(state_path_for(state_dir, "parser").read_bytes())
        assert data["iterations"][0]["termination_reason"] == "threshold"
        assert data["settings"]["threshold"] == 0.25

    def test_existing_state_refused(
        self, runner, prompt_file, context_file, tmp_path, use_script
    ):
        """Test start refuses a task that already has state."""
        use_script([reply("[done]")])
        state_dir = tmp_path / "state"
        runner.invoke(cli_main.cli, start_args(prompt_file, context_file, state_dir))

        use_script([reply("[done]")])
        result = runner.invoke(cli_main.cli, start_args(prompt_file, context_file, state_dir))

        assert result.exit_code == 1
        assert "resume" in result.output

    def test_missing_api_key(self, runner, prompt_file, context_file, tmp_path, monkeypatch):
        """Test a missing API key exits 1."""
        monkeypatch.delenv("OPENAI_API_KEY")

        result = runner.invoke(
            cli_main.cli, start_args(prompt_file, context_file, tmp_path / "state")
        )

        assert result.exit_code == 1
        assert "API key" in result.output

    def test_invalid_threshold(self, runner, prompt_file, context_file, tmp_path):
        """Test an out-of-range threshold exits 1."""
        result = runner.invoke(
            cli_main.cli,
            start_args(prompt_file, context_file, tmp_path / "state", "--threshold", "1.5"),
        )

        assert result.exit_code == 1
        assert "Configuration Error" in result.output

    def test_undecodable_prompt_fails_cleanly(self, runner, context_file, tmp_path, use_script):
        """Test a prompt file that is not UTF-8 exits 1 without a traceback."""
        client = use_script([reply("[done]")])
        prompt = tmp_path / "PROMPT.md"
        prompt.write_bytes(b"\xff\xfe\xfa broken")

        result = runner.invoke(cli_main.cli, start_args(prompt, context_file, tmp_path / "state"))

        assert result.exit_code == 1
        assert "Cannot read the task" in result.output
        assert not isinstance(result.exception, UnicodeDecodeError)
        assert client.opened == []

    def test_missing_prompt_is_usage_error(self, runner, tmp_path):
        """Test a missing prompt file is a usage error."""
        result = runner.invoke(cli_main.cli, ["start", "--prompt", str(tmp_path / "nope.md")])
        assert result.exit_code == 2


class TestResume:
    """The resume command."""

    @pytest.fixture
    def interrupted(self, prompt_file, context_file, tmp_path):
        """State left behind by a run that crashed mid-iteration."""
        task = TaskSpec.from_files(prompt_file, [context_file], task_id="parser")
        state = ProgressState.for_task(task, {"threshold": 0.6})
        state.open_iteration()
        path = state_path_for(tmp_path / "state", "parser")
        save_state(path, state)
        return path

    def test_resume_completes(self, runner, interrupted, use_script):
        """Test resume finishes an interrupted run."""
        use_script([reply("[done]", usage=0.2)])

        result = runner.invoke(cli_main.cli, ["resume", str(interrupted)])

        assert result.exit_code == 0, result.output
        data = orjson.loads(interrupted.read_bytes())
        assert [r["termination_reason"] for r in data["iterations"]] == [
            TerminationReason.ERROR.value,
            TerminationReason.COMPLETION.value,
        ]

    def test_resume_detects_drift(self, runner, interrupted, prompt_file, use_script):
        """Test resume refuses a changed prompt and leaves the state alone."""
        client = use_script([reply("[done]")])
        before = interrupted.read_bytes()
        prompt_file.write_text("Refactor the parser and the lexer.")

        result = runner.invoke(cli_main.cli, ["resume", str(interrupted)])

        assert result.exit_code == 1
        assert "drift" in result.output.lower()
        assert interrupted.read_bytes() == before
        assert client.opened == []

    def test_resume_terminal_run(self, runner, interrupted, use_script):
        """Test resuming a finished run exits with its code."""
        use_script([reply("[done]")])
        runner.invoke(cli_main.cli, ["resume", str(interrupted)])
        client = use_script([])

        result = runner.invoke(cli_main.cli, ["resume", str(interrupted)])

        assert result.exit_code == 0
        assert client.opened == []


class TestStatus:
    """The status command."""

    def test_in_progress(self, runner, tmp_path):
        """Test status exits 4 for a run in progress."""
        state = ProgressState.for_task(TaskSpec.create("p", task_id="t"))
        state.open_iteration()
        path = state_path_for(tmp_path / "state", "t")
        save_state(path, state)

        result = runner.invoke(cli_main.cli, ["status", str(path)])

        assert result.exit_code == 4
        assert "in_progress" in result.output

    def test_complete(self, runner, tmp_path):
        """Test status exits 0 for a complete run."""
        state = ProgressState.for_task(TaskSpec.create("p", task_id="t"))
        state.open_iteration()
        state.current.finalize(TerminationReason.COMPLETION)
        state.mark_complete()
        path = state_path_for(tmp_path / "state", "t")
        save_state(path, state)

        result = runner.invoke(cli_main.cli, ["status", str(path)])

        assert result.exit_code == 0
        assert "Iterations" in result.output

    def test_blocked(self, runner, tmp_path):
        """Test status exits 3 for a blocked run."""
        state = ProgressState.for_task(TaskSpec.create("p", task_id="t"))
        state.mark_blocked("iteration_cap")
        path = state_path_for(tmp_path / "state", "t")
        save_state(path, state)

        result = runner.invoke(cli_main.cli, ["status", str(path)])

        assert result.exit_code == 3
        assert "iteration_cap" in result.output

    def test_corrupt_state(self, runner, tmp_path):
        """Test status exits 1 for a corrupt state file."""
        path = tmp_path / "progress.json"
        path.write_text("{broken")

        result = runner.invoke(cli_main.cli, ["status", str(path)])

        assert result.exit_code == 1


def test_version(runner):
    """Test --version prints the program name."""
    result = runner.invoke(cli_main.cli, ["--version"])
    assert result.exit_code == 0
    assert "circular-prompt" in result.output
