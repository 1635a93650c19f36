"""Crash-safe persistence of a task's ProgressState.

One JSON document per task. Writes go to a sibling temp file that is
flushed, fsynced and then moved over the real file with ``os.replace``,
so a crash mid-write leaves the previous version intact.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

import aiofiles
import aiofiles.os
import orjson

from circular_prompt.loop.models import SCHEMA_VERSION, ProgressState, TaskSpec
from circular_prompt.utils.exceptions import (
    DriftError,
    InconsistentStateError,
    StateCorruptError,
)

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "progress.json"


def state_path_for(state_dir: Path, task_id: str) -> Path:
    """Location of the state file for ``task_id`` under ``state_dir``."""
    return Path(state_dir) / task_id / STATE_FILE_NAME


class ProgressStore:
    """Durable, append-oriented store for one task's progress.

    A single loop instance is the only writer of its store; the lock only
    serialises overlapping saves from that instance.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self._last_saved: ProgressState | None = None

    def exists(self) -> bool:
        return self.path.is_file()

    async def load(self) -> ProgressState | None:
        """Load the persisted state.

        Returns:
            The stored ProgressState, or None if nothing was saved yet.

        Raises:
            StateCorruptError: If the file cannot be decoded, was written
                by a newer schema, or violates the model invariants.
        """
        if not self.path.exists():
            return None

        async with aiofiles.open(self.path, "rb") as fp:
            content = await fp.read()

        try:
            data = orjson.loads(content)
        except orjson.JSONDecodeError as e:
            raise StateCorruptError(
                f"State file is not valid JSON: {e}", state_path=str(self.path), cause=e
            ) from e

        version = data.get("schema_version") if isinstance(data, dict) else None
        if not isinstance(version, int):
            raise StateCorruptError("State file has no schema_version", state_path=str(self.path))
        if version > SCHEMA_VERSION:
            raise StateCorruptError(
                f"State schema {version} is newer than supported ({SCHEMA_VERSION})",
                state_path=str(self.path),
            )

        try:
            state = ProgressState.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            raise StateCorruptError(
                f"State file is malformed: {e}", state_path=str(self.path), cause=e
            ) from e

        problems = state.violations()
        if problems:
            raise StateCorruptError(
                f"State invariants violated: {'; '.join(problems)}",
                state_path=str(self.path),
            )

        self._last_saved = ProgressState.from_dict(data)
        logger.debug(f"Loaded state for {state.task_id}: {state.total_iterations} iteration(s)")
        return state

    async def save(self, state: ProgressState) -> None:
        """Atomically persist ``state``.

        Raises:
            InconsistentStateError: If the state breaks an invariant or
                rewrites history relative to the last save.
        """
        problems = state.violations()
        if problems:
            raise InconsistentStateError(
                f"Refusing to save inconsistent state: {'; '.join(problems)}",
                state_path=str(self.path),
            )

        async with self._lock:
            if self._last_saved is not None:
                self._check_append_only(self._last_saved, state)

            payload = state.to_dict()
            content = orjson.dumps(payload, option=orjson.OPT_INDENT_2)
            await self._atomic_write(content)
            self._last_saved = ProgressState.from_dict(payload)

        logger.debug(
            f"Saved state for {state.task_id}: status={state.status.value}, "
            f"iterations={state.total_iterations}"
        )

    async def _atomic_write(self, content: bytes) -> None:
        await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")

        try:
            async with aiofiles.open(tmp_path, "wb") as fp:
                await fp.write(content)
                await fp.flush()
                os.fsync(fp.fileno())
            await aiofiles.os.replace(tmp_path, self.path)
        except BaseException:
            if tmp_path.exists():
                tmp_path.unlink()
            raise

    def _check_append_only(self, previous: ProgressState, current: ProgressState) -> None:
        """Finalized records are immutable; the open one is finalized once."""
        if previous.task_id != current.task_id:
            raise InconsistentStateError(
                f"Task id changed from {previous.task_id} to {current.task_id}",
                state_path=str(self.path),
            )
        if previous.status.is_terminal and current.status is not previous.status:
            raise InconsistentStateError(
                f"Status is terminal ({previous.status.value}) and cannot change",
                state_path=str(self.path),
            )
        if len(current.iterations) < len(previous.iterations):
            raise InconsistentStateError(
                "Iteration records were removed", state_path=str(self.path)
            )

        for old, new in zip(previous.iterations, current.iterations):
            if old.is_open:
                if old.number != new.number or old.started_at != new.started_at:
                    raise InconsistentStateError(
                        f"Open iteration {old.number} was replaced", state_path=str(self.path)
                    )
                continue
            if old.to_dict() != new.to_dict():
                raise InconsistentStateError(
                    f"Finalized iteration {old.number} was rewritten", state_path=str(self.path)
                )

    def check_drift(self, state: ProgressState, task: TaskSpec) -> None:
        """Compare stored hashes with the live TaskSpec.

        Makes no changes to ``state`` or to the file.

        Raises:
            DriftError: On any mismatch.
        """
        if state.prompt_hash != task.prompt_hash:
            raise DriftError(
                "prompt", state.prompt_hash, task.prompt_hash, state_path=str(self.path)
            )
        if state.context_hash != task.context_hash:
            raise DriftError(
                "base_context", state.context_hash, task.context_hash, state_path=str(self.path)
            )
