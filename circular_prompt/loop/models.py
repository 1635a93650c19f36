"""Data model for the circular prompting loop.

Every persisted type converts to and from plain dicts so the Progress
Store can serialise it as one JSON document per task.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

SCHEMA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(UTC)


def content_hash(text: str) -> str:
    """SHA-256 hex digest of ``text`` encoded as UTF-8."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _format_ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class SampleSource(Enum):
    """Where a usage figure came from."""
    REPORTED = "reported"
    ESTIMATED = "estimated"


class Classification(Enum):
    """Termination classifier verdicts."""
    SUCCESS = "success"
    CONTINUE = "continue"
    UNKNOWN = "unknown"


class TerminationReason(Enum):
    """Why an iteration ended."""
    THRESHOLD = "threshold"
    COMPLETION = "completion"
    ERROR = "error"
    CANCELLED = "cancelled"


class RunStatus(Enum):
    """Overall status of a task."""
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.IN_PROGRESS


class BlockedReason:
    """Reason strings recorded when a run becomes blocked."""

    TERMINATION_AMBIGUOUS = "termination_ambiguous"
    ITERATION_CAP = "iteration_cap"
    RATE_LIMITED_EXHAUSTED = "rate_limited_exhausted"
    EXECUTION_RETRIES_EXHAUSTED = "execution_retries_exhausted"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TaskSpec:
    """Immutable task definition reinjected into every new thread."""

    task_id: str
    prompt: str
    base_context: str
    prompt_hash: str
    context_hash: str
    source: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def create(
        cls,
        prompt: str,
        base_context: str = "",
        task_id: str | None = None,
        source: dict[str, Any] | None = None,
    ) -> TaskSpec:
        """Build a TaskSpec, computing both content hashes.

        Args:
            prompt: Task prompt text.
            base_context: Base context blob (may be empty).
            task_id: Identity used to key the persisted state; defaults to
                a prefix of the prompt hash.
            source: File locations the task was read from, if any.
        """
        prompt_hash = content_hash(prompt)
        return cls(
            task_id=task_id or prompt_hash[:12],
            prompt=prompt,
            base_context=base_context,
            prompt_hash=prompt_hash,
            context_hash=content_hash(base_context),
            source=dict(source or {}),
        )

    @classmethod
    def from_files(
        cls,
        prompt_path: Path,
        context_paths: list[Path] | tuple[Path, ...] = (),
        task_id: str | None = None,
    ) -> TaskSpec:
        """Read a TaskSpec from a prompt file and zero or more context files.

        Context files are concatenated in order, each under a header line
        naming the file.
        """
        prompt = Path(prompt_path).read_text(encoding="utf-8")
        parts = []
        for path in context_paths:
            path = Path(path)
            parts.append(f"--- {path.name} ---\n{path.read_text(encoding='utf-8')}")
        base_context = "\n\n".join(parts)
        source = {
            "prompt_path": str(Path(prompt_path).resolve()),
            "context_paths": [str(Path(p).resolve()) for p in context_paths],
        }
        return cls.create(prompt, base_context, task_id=task_id, source=source)

    @property
    def size_chars(self) -> int:
        return len(self.prompt) + len(self.base_context)


@dataclass
class ContextSample:
    """One usage observation taken after a turn."""

    timestamp: datetime
    usage: float
    source: SampleSource
    turn: int = 0
    raw_usage: float | None = None
    estimated_usage: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "usage": self.usage,
            "source": self.source.value,
            "turn": self.turn,
            "raw_usage": self.raw_usage,
            "estimated_usage": self.estimated_usage,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContextSample:
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            usage=data["usage"],
            source=SampleSource(data["source"]),
            turn=data.get("turn", 0),
            raw_usage=data.get("raw_usage"),
            estimated_usage=data.get("estimated_usage"),
        )


@dataclass
class IterationRecord:
    """Work done in one conversation thread and why the thread ended."""

    number: int
    started_at: datetime
    ended_at: datetime | None = None
    files_modified: list[str] = field(default_factory=list)
    issues_resolved: int = 0
    issues_discovered: int = 0
    peak_usage: float = 0.0
    termination_reason: TerminationReason | None = None
    turns: int = 0
    last_classification: Classification | None = None

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    def add_files(self, files: list[str]) -> None:
        """Append file names, keeping first-seen order without duplicates."""
        for name in files:
            if name not in self.files_modified:
                self.files_modified.append(name)

    def observe_usage(self, usage: float) -> None:
        self.peak_usage = max(self.peak_usage, usage)

    def finalize(self, reason: TerminationReason, when: datetime | None = None) -> None:
        """Close the record. A record can only be finalized once."""
        if not self.is_open:
            raise ValueError(f"Iteration {self.number} is already finalized")
        self.ended_at = max(when or utcnow(), self.started_at)
        self.termination_reason = reason

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "started_at": _format_ts(self.started_at),
            "ended_at": _format_ts(self.ended_at),
            "files_modified": list(self.files_modified),
            "issues_resolved": self.issues_resolved,
            "issues_discovered": self.issues_discovered,
            "peak_usage": self.peak_usage,
            "termination_reason": (
                self.termination_reason.value if self.termination_reason else None
            ),
            "turns": self.turns,
            "last_classification": (
                self.last_classification.value if self.last_classification else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IterationRecord:
        reason = data.get("termination_reason")
        classification = data.get("last_classification")
        return cls(
            number=data["number"],
            started_at=datetime.fromisoformat(data["started_at"]),
            ended_at=_parse_ts(data.get("ended_at")),
            files_modified=list(data.get("files_modified", [])),
            issues_resolved=data.get("issues_resolved", 0),
            issues_discovered=data.get("issues_discovered", 0),
            peak_usage=data.get("peak_usage", 0.0),
            termination_reason=TerminationReason(reason) if reason else None,
            turns=data.get("turns", 0),
            last_classification=Classification(classification) if classification else None,
        )


@dataclass
class ErrorRecord:
    """Audit entry for an error and the recovery action taken."""

    iteration: int
    timestamp: datetime
    kind: str
    message: str
    action: str
    classification: Classification | None = None
    usage: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "timestamp": self.timestamp.isoformat(),
            "kind": self.kind,
            "message": self.message,
            "action": self.action,
            "classification": self.classification.value if self.classification else None,
            "usage": self.usage,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorRecord:
        classification = data.get("classification")
        return cls(
            iteration=data["iteration"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            kind=data["kind"],
            message=data["message"],
            action=data["action"],
            classification=Classification(classification) if classification else None,
            usage=data.get("usage"),
        )


@dataclass
class ProgressState:
    """Durable aggregate of a task's iterations and overall status."""

    task_id: str
    prompt_hash: str
    context_hash: str
    iterations: list[IterationRecord] = field(default_factory=list)
    status: RunStatus = RunStatus.IN_PROGRESS
    blocked_reason: str | None = None
    errors: list[ErrorRecord] = field(default_factory=list)
    settings: dict[str, Any] = field(default_factory=dict)
    task_source: dict[str, Any] = field(default_factory=dict)
    sample_interval: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    schema_version: int = SCHEMA_VERSION

    @classmethod
    def for_task(cls, task: TaskSpec, settings: dict[str, Any] | None = None) -> ProgressState:
        return cls(
            task_id=task.task_id,
            prompt_hash=task.prompt_hash,
            context_hash=task.context_hash,
            settings=dict(settings or {}),
            task_source=dict(task.source),
            sample_interval=int((settings or {}).get("sample_interval", 1)),
        )

    @property
    def total_iterations(self) -> int:
        return len(self.iterations)

    @property
    def current(self) -> IterationRecord | None:
        """The in-progress record, if any."""
        if self.iterations and self.iterations[-1].is_open:
            return self.iterations[-1]
        return None

    @property
    def finalized(self) -> list[IterationRecord]:
        return [r for r in self.iterations if not r.is_open]

    def open_iteration(self, when: datetime | None = None) -> IterationRecord:
        """Append the next IterationRecord.

        Raises:
            ValueError: If a record is still open or the run is terminal.
        """
        if self.status.is_terminal:
            raise ValueError(f"Cannot open an iteration on a {self.status.value} run")
        if self.current is not None:
            raise ValueError(f"Iteration {self.current.number} is still open")

        started = when or utcnow()
        if self.iterations and self.iterations[-1].ended_at:
            started = max(started, self.iterations[-1].ended_at)
        record = IterationRecord(number=self.total_iterations + 1, started_at=started)
        self.iterations.append(record)
        self.touch()
        return record

    def mark_complete(self) -> None:
        self._transition(RunStatus.COMPLETE)

    def mark_blocked(self, reason: str) -> None:
        self._transition(RunStatus.BLOCKED)
        self.blocked_reason = reason

    def _transition(self, target: RunStatus) -> None:
        if self.status is not RunStatus.IN_PROGRESS:
            raise ValueError(
                f"Status is terminal ({self.status.value}); cannot move to {target.value}"
            )
        if self.current is not None:
            raise ValueError("Finalize the open iteration before changing status")
        self.status = target
        self.touch()

    def record_error(self, error: ErrorRecord) -> None:
        self.errors.append(error)
        self.touch()

    def touch(self) -> None:
        self.updated_at = utcnow()

    def violations(self) -> list[str]:
        """Describe every broken invariant; empty when consistent."""
        problems = []
        for expected, record in enumerate(self.iterations, start=1):
            if record.number != expected:
                problems.append(
                    f"iteration numbers not contiguous: expected {expected}, got {record.number}"
                )
                break

        open_records = [r.number for r in self.iterations if r.is_open]
        if len(open_records) > 1:
            problems.append(f"multiple open iterations: {open_records}")
        elif open_records and open_records[0] != self.total_iterations:
            problems.append(f"open iteration {open_records[0]} is not the latest")

        for record in self.iterations:
            if not record.is_open and record.termination_reason is None:
                problems.append(f"iteration {record.number} ended without a reason")
            if record.ended_at and record.ended_at < record.started_at:
                problems.append(f"iteration {record.number} ends before it starts")

        for prev, nxt in zip(self.iterations, self.iterations[1:]):
            if nxt.started_at < prev.started_at:
                problems.append(f"iteration {nxt.number} starts before {prev.number}")

        if self.status.is_terminal and open_records:
            problems.append(f"{self.status.value} run has an open iteration")
        if self.status is RunStatus.BLOCKED and not self.blocked_reason:
            problems.append("blocked run has no reason")
        return problems

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "task_id": self.task_id,
            "prompt_hash": self.prompt_hash,
            "context_hash": self.context_hash,
            "total_iterations": self.total_iterations,
            "status": self.status.value,
            "blocked_reason": self.blocked_reason,
            "iterations": [r.to_dict() for r in self.iterations],
            "errors": [e.to_dict() for e in self.errors],
            "settings": self.settings,
            "task_source": self.task_source,
            "sample_interval": self.sample_interval,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProgressState:
        iterations = [IterationRecord.from_dict(r) for r in data.get("iterations", [])]
        declared = data.get("total_iterations", len(iterations))
        if declared != len(iterations):
            raise ValueError(
                f"total_iterations is {declared} but {len(iterations)} records are stored"
            )
        return cls(
            task_id=data["task_id"],
            prompt_hash=data["prompt_hash"],
            context_hash=data["context_hash"],
            iterations=iterations,
            status=RunStatus(data["status"]),
            blocked_reason=data.get("blocked_reason"),
            errors=[ErrorRecord.from_dict(e) for e in data.get("errors", [])],
            settings=dict(data.get("settings", {})),
            task_source=dict(data.get("task_source", {})),
            sample_interval=data.get("sample_interval", 1),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            schema_version=data["schema_version"],
        )
