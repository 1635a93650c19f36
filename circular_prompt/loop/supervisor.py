"""Runs several independent tasks concurrently."""

from __future__ import annotations

import asyncio
import logging

from circular_prompt.loop.models import ProgressState
from circular_prompt.loop.thread_manager import ThreadManager

logger = logging.getLogger(__name__)


class LoopSupervisor:
    """Drives a set of Thread Managers side by side.

    Each manager owns its own task, store and state, so a failure in one
    does not stop or corrupt the others.
    """

    def __init__(self, managers: list[ThreadManager]):
        task_ids = [m.task.task_id for m in managers]
        duplicates = {t for t in task_ids if task_ids.count(t) > 1}
        if duplicates:
            raise ValueError(f"Duplicate task ids: {sorted(duplicates)}")

        paths = [m.store.path.resolve() for m in managers]
        if len(set(paths)) != len(paths):
            raise ValueError("Each task needs its own state file")

        self.managers = list(managers)

    async def run_all(self, resume: bool = False) -> dict[str, ProgressState | BaseException]:
        """Run (or resume) every task and wait for all of them.

        Returns:
            Final state per task id, or the exception that task raised.
        """
        logger.info(f"Supervising {len(self.managers)} task(s)")
        results = await asyncio.gather(
            *(m.resume() if resume else m.run() for m in self.managers),
            return_exceptions=True,
        )

        outcome: dict[str, ProgressState | BaseException] = {}
        for manager, result in zip(self.managers, results):
            if isinstance(result, BaseException):
                logger.error(f"Task {manager.task.task_id} failed: {result}")
            outcome[manager.task.task_id] = result
        return outcome

    def cancel_all(self) -> None:
        for manager in self.managers:
            manager.cancel()
