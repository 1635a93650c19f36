"""Execution collaborator interface."""

from circular_prompt.execution.base import ChangeResult, ExecutionCollaborator, TestResult

__all__ = ["ChangeResult", "ExecutionCollaborator", "TestResult"]
