"""Shared fixtures and fakes for circular-prompt tests."""

import asyncio
from pathlib import Path

import pytest

from circular_prompt.client.base import ModelClient, ThreadHandle, TurnResult, UsageSample
from circular_prompt.config import LoopConfig
from circular_prompt.execution.base import ChangeResult, ExecutionCollaborator, TestResult
from circular_prompt.loop.models import TaskSpec
from circular_prompt.loop.progress_store import ProgressStore, state_path_for

HANG = object()


def reply(
    text: str,
    usage: float | None = None,
    files: list[str] | None = None,
    resolved: int = 0,
    discovered: int = 0,
) -> TurnResult:
    """Build a TurnResult with an optional reported usage ratio."""
    return TurnResult(
        text=text,
        usage=UsageSample(ratio=usage) if usage is not None else None,
        files_modified=list(files or []),
        issues_resolved=resolved,
        issues_discovered=discovered,
    )


class ScriptedClient(ModelClient):
    """Model client that plays back a fixed list of steps.

    A step is a TurnResult to return, an exception to raise, or ``HANG`` to
    block until the turn is cancelled.
    """

    def __init__(self, script):
        self.script = list(script)
        self.opened: list[TaskSpec] = []
        self.closed: list[str] = []
        self.sends: list[str] = []
        self.hanging = asyncio.Event()

    async def open_thread(self, task: TaskSpec) -> ThreadHandle:
        self.opened.append(task)
        return ThreadHandle(task_id=task.task_id)

    async def send_and_await(self, handle: ThreadHandle) -> TurnResult:
        self.sends.append(handle.thread_id)
        if not self.script:
            raise AssertionError("script exhausted")
        step = self.script.pop(0)
        if step is HANG:
            self.hanging.set()
            await asyncio.Event().wait()
        if isinstance(step, BaseException):
            raise step
        return step

    async def close_thread(self, handle: ThreadHandle) -> None:
        self.closed.append(handle.thread_id)


class FakeExecutor(ExecutionCollaborator):
    """Execution collaborator with scripted apply outcomes."""

    def __init__(self, apply_ok=(True,), failed_tests: int = 0):
        self.apply_ok = list(apply_ok)
        self.failed_tests = failed_tests
        self.applied: list[list[str]] = []
        self.reverted: list[list[str]] = []

    async def apply_changes(self, files: list[str]) -> ChangeResult:
        self.applied.append(files)
        ok = self.apply_ok.pop(0) if len(self.apply_ok) > 1 else self.apply_ok[0]
        return ChangeResult(ok=ok, files=files, message="" if ok else "patch did not apply")

    async def revert(self, files: list[str]) -> ChangeResult:
        self.reverted.append(files)
        return ChangeResult(ok=True, files=files)

    async def run_tests(self) -> TestResult:
        return TestResult(passed=3, failed=self.failed_tests)


@pytest.fixture
def task() -> TaskSpec:
    return TaskSpec.create(
        prompt="Refactor the parser module and keep the tests green.",
        base_context="Architecture: the parser lives in src/parser.py.",
        task_id="task-1",
    )


@pytest.fixture
def state_dir(tmp_path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def store(state_dir, task) -> ProgressStore:
    return ProgressStore(state_path_for(state_dir, task.task_id))


@pytest.fixture
def loop_config() -> LoopConfig:
    return LoopConfig(rate_limit_base_delay=0.0, rate_limit_max_delay=0.0)
