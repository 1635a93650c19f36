"""Optional execution collaborator interface.

The collaborator applies the files an agent reports as changed, can revert
them, and can run tests. It only feeds telemetry into the IterationRecord;
the loop is correct without one.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class ChangeResult:
    """Outcome of applying or reverting a set of files."""

    ok: bool
    files: list[str] = field(default_factory=list)
    message: str = ""


@dataclass
class TestResult:
    """Outcome of a test run."""

    passed: int = 0
    failed: int = 0
    issues: list[str] = field(default_factory=list)

    __test__ = False  # not a pytest test class

    @property
    def issues_found(self) -> int:
        return max(self.failed, len(self.issues))


class ExecutionCollaborator(ABC):
    """Applies changes, reverts them and runs tests."""

    @abstractmethod
    async def apply_changes(self, files: list[str]) -> ChangeResult:
        pass

    @abstractmethod
    async def revert(self, files: list[str]) -> ChangeResult:
        pass

    @abstractmethod
    async def run_tests(self) -> TestResult:
        pass
