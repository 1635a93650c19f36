"""Thread Manager: the circular prompting state machine.

Opens a conversation thread with the unchanged TaskSpec and exchanges turns
until the agent declares completion. When context usage crosses the
threshold, the current iteration is closed and persisted, and a fresh
thread takes over. Errors go through the Error Policy, and a run that
cannot decide on its own ends as ``blocked`` for a human to look at.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, TypeVar

from circular_prompt.config.config import ClassifierConfig, LoopConfig
from circular_prompt.loop.classifier import TerminationClassifier
from circular_prompt.loop.context_monitor import ContextMonitor
from circular_prompt.loop.error_policy import ErrorKind, ErrorPolicy, RecoveryAction
from circular_prompt.loop.models import (
    BlockedReason,
    Classification,
    ContextSample,
    ErrorRecord,
    IterationRecord,
    ProgressState,
    RunStatus,
    TaskSpec,
    TerminationReason,
    utcnow,
)
from circular_prompt.loop.progress_store import ProgressStore
from circular_prompt.resilience.retry import (
    RetryConfig,
    RetryContext,
    RetryPolicy,
    cancellable_sleep,
)
from circular_prompt.utils.exceptions import (
    ContextOverflowError,
    ExecutionFailureError,
    InconsistentStateError,
    LoopCancelledError,
)

if TYPE_CHECKING:
    from circular_prompt.client.base import ModelClient, ThreadHandle, TurnResult
    from circular_prompt.execution.base import ExecutionCollaborator

logger = logging.getLogger(__name__)
T = TypeVar("T")


class LoopPhase(Enum):
    """Thread Manager states."""
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    THRESHOLD_HIT = "threshold_hit"
    COMPLETE = "complete"
    BLOCKED = "blocked"
    ERROR = "error"


class TurnOutcome(Enum):
    """What the loop does after a turn."""
    NEXT_TURN = "next_turn"
    NEW_ITERATION = "new_iteration"
    STOP = "stop"


class ThreadManager:
    """Drives one task through repeated conversation threads.

    One instance owns one task's ProgressState. Nothing here is shared
    between instances, so independent tasks can run side by side.
    """

    def __init__(
        self,
        task: TaskSpec,
        client: ModelClient,
        store: ProgressStore,
        config: LoopConfig | None = None,
        classifier: TerminationClassifier | None = None,
        executor: ExecutionCollaborator | None = None,
        error_policy: ErrorPolicy | None = None,
        cancel_event: asyncio.Event | None = None,
    ):
        """Initialize the manager.

        Args:
            task: The immutable task definition.
            client: Model client used to open threads and run turns.
            store: Progress store for this task.
            config: Loop parameters.
            classifier: Termination classifier; defaults to built-in phrases.
            executor: Optional execution collaborator for change telemetry.
            error_policy: Error-to-action mapping.
            cancel_event: External cancellation signal.
        """
        self.task = task
        self.client = client
        self.store = store
        self.config = config or LoopConfig()
        self.classifier = classifier or TerminationClassifier.from_config(ClassifierConfig())
        self.executor = executor
        self.error_policy = error_policy or ErrorPolicy()
        self.cancel_event = cancel_event or asyncio.Event()

        self.monitor = ContextMonitor(
            threshold=self.config.threshold,
            chars_per_token=self.config.chars_per_token,
            context_window=self.config.context_window,
            sample_interval=self.config.sample_interval,
        )
        self.retry_policy = RetryPolicy(
            RetryConfig(
                max_retries=self.config.rate_limit_max_retries,
                base_delay=self.config.rate_limit_base_delay,
                max_delay=self.config.rate_limit_max_delay,
                on_retry=self._on_rate_limited,
            ),
            cancel_event=self.cancel_event,
        )

        self.state: ProgressState | None = None
        self.phase = LoopPhase.IDLE
        self.transitions: list[tuple[LoopPhase, LoopPhase]] = []

        self._handle: ThreadHandle | None = None
        self._turn = 0
        self._unknown_streak = 0
        self._execution_retries = 0
        self._last_sample: ContextSample | None = None

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(self) -> ProgressState:
        """Start a fresh run for the task.

        Raises:
            InconsistentStateError: If state already exists for this task.
        """
        if self.store.exists():
            raise InconsistentStateError(
                f"State already exists for task {self.task.task_id}; resume it instead",
                state_path=str(self.store.path),
            )

        self.state = ProgressState.for_task(self.task, self.config.to_settings())
        await self.store.save(self.state)
        logger.info(f"Starting task {self.task.task_id} (threshold {self.config.threshold:.2f})")
        return await self._drive()

    async def resume(self) -> ProgressState:
        """Continue a persisted run.

        A terminal run is returned untouched. An iteration left open by a
        crash is closed with reason ``error`` and the loop starts the next
        one.

        Raises:
            InconsistentStateError: If there is nothing to resume.
            DriftError: If the TaskSpec changed since the run started.
        """
        state = await self.store.load()
        if state is None:
            raise InconsistentStateError(
                "No saved state to resume", state_path=str(self.store.path)
            )
        self.store.check_drift(state, self.task)

        self.state = state
        self.monitor.sample_interval = max(1, state.sample_interval)

        if state.status.is_terminal:
            logger.info(f"Task {state.task_id} is already {state.status.value}; nothing to do")
            self._set_phase(
                LoopPhase.COMPLETE if state.status is RunStatus.COMPLETE else LoopPhase.BLOCKED
            )
            return state

        stale = state.current
        if stale is not None:
            logger.warning(f"Closing iteration {stale.number} left open by an interrupted run")
            stale.finalize(TerminationReason.ERROR)
            self._record_error(
                "interrupted",
                f"Iteration {stale.number} was still open when the run was resumed",
                RecoveryAction.RESTART.value,
                iteration=stale.number,
            )
            await self.store.save(state)

        logger.info(f"Resuming task {state.task_id} after {state.total_iterations} iteration(s)")
        return await self._drive()

    def cancel(self) -> None:
        """Signal the loop to stop at its next suspension point."""
        self.cancel_event.set()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _drive(self) -> ProgressState:
        try:
            await self._loop()
        except asyncio.CancelledError:
            await self._stop_cancelled("Task was cancelled")
            raise
        finally:
            await self._close_thread()
        return self.state

    async def _loop(self) -> None:
        while True:
            try:
                if self.state.current is None:
                    record = await self.start_iteration()
                    if record is None:
                        return

                outcome = await self._run_turn()
            except Exception as e:
                if not await self._recover(e):
                    return
                continue

            if outcome is TurnOutcome.STOP:
                return

    async def start_iteration(self) -> IterationRecord | None:
        """Open a new thread and allocate the next IterationRecord.

        Returns:
            The new record, or None when the iteration cap blocked the run.
        """
        state = self.state
        if state.total_iterations >= self.config.max_iterations:
            logger.warning(f"Iteration cap of {self.config.max_iterations} reached")
            await self._block(
                BlockedReason.ITERATION_CAP,
                f"Iteration cap of {self.config.max_iterations} reached",
            )
            return None

        self._set_phase(LoopPhase.STARTING)
        await self._close_thread()
        self._handle = await self.retry_policy.execute(self._open)

        record = state.open_iteration()
        self._turn = 0
        self._unknown_streak = 0
        self._execution_retries = 0
        self.monitor.begin_thread(self.task.size_chars)
        await self.store.save(state)

        logger.info(f"Iteration {record.number} started on thread {self._handle.thread_id}")
        return record

    async def _run_turn(self) -> TurnOutcome:
        state = self.state
        record = state.current
        self._set_phase(LoopPhase.RUNNING)

        self._turn += 1
        result = await self.retry_policy.execute(self._send)

        record.turns += 1
        reported = result.usage.ratio if result.usage is not None else None
        sample = self.monitor.observe(result.sent_text + result.text, reported, turn=self._turn)
        self._last_sample = sample
        record.observe_usage(sample.usage)

        await self._apply_deltas(record, result)

        classification = self.classifier.classify(result.text)
        record.last_classification = classification
        if classification is Classification.UNKNOWN:
            self._unknown_streak += 1
        else:
            self._unknown_streak = 0
        logger.debug(
            f"Iteration {record.number} turn {self._turn}: {classification.value}, "
            f"usage {sample.usage:.3f}"
        )

        # 1. Completion dominates everything else
        if classification is Classification.SUCCESS:
            record.finalize(TerminationReason.COMPLETION)
            state.mark_complete()
            await self.store.save(state)
            self._set_phase(LoopPhase.COMPLETE)
            logger.info(f"Task {state.task_id} complete after {state.total_iterations} iteration(s)")
            return TurnOutcome.STOP

        if self.monitor.is_overflow(sample):
            raise ContextOverflowError(usage=sample.raw_usage)

        # 2. Threshold reached: restart into a fresh thread
        threshold_hit = self.monitor.is_due(self._turn, sample) and self.monitor.sample(sample.usage)
        turn_cap = self.config.max_turns_per_iteration
        if threshold_hit or (turn_cap is not None and record.turns >= turn_cap):
            self._set_phase(LoopPhase.THRESHOLD_HIT)
            record.finalize(TerminationReason.THRESHOLD)
            await self.store.save(state)
            logger.info(
                f"Iteration {record.number} reached the restart point "
                f"(usage {sample.usage:.3f}, turns {record.turns})"
            )
            return TurnOutcome.NEW_ITERATION

        # 4. Ambiguous replies escalate once the streak is long enough
        if self._unknown_streak >= self.config.unknown_limit:
            logger.warning(
                f"{self._unknown_streak} consecutive unclassifiable replies; blocking"
            )
            await self._block(
                BlockedReason.TERMINATION_AMBIGUOUS,
                f"{self._unknown_streak} consecutive replies matched no termination phrase",
                classification=classification,
                usage=sample.usage,
            )
            return TurnOutcome.STOP

        # 3. Same thread, another turn
        await self.store.save(state)
        return TurnOutcome.NEXT_TURN

    async def _open(self) -> ThreadHandle:
        return await self._await_cancellable(self.client.open_thread(self.task))

    async def _send(self) -> TurnResult:
        return await self._await_cancellable(self.client.send_and_await(self._handle))

    async def _apply_deltas(self, record: IterationRecord, result: TurnResult) -> None:
        """Fold the turn's file and issue telemetry into the record.

        Nothing is counted for a turn whose changes fail to apply.
        """
        if result.files_modified and self.executor is not None:
            change = await self.executor.apply_changes(list(result.files_modified))
            if not change.ok:
                raise ExecutionFailureError(
                    change.message or "Failed to apply changes",
                    files=change.files or list(result.files_modified),
                )
            record.add_files(change.files or list(result.files_modified))

            tests = await self.executor.run_tests()
            record.issues_discovered += tests.issues_found
        elif result.files_modified:
            record.add_files(result.files_modified)

        record.issues_resolved += result.issues_resolved
        record.issues_discovered += result.issues_discovered

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def _recover(self, error: Exception) -> bool:
        """Apply the Error Policy to ``error``.

        Returns:
            True if the loop should keep going, False if it has stopped.
        """
        action = self.error_policy.decide(error)
        kind = self.error_policy.kind_of(error)
        state = self.state
        record = state.current

        if action is RecoveryAction.STOP:
            await self._stop_cancelled(str(error))
            return False

        self._set_phase(LoopPhase.ERROR)

        if action is RecoveryAction.RESTART:
            usage = getattr(error, "usage", None)
            logger.warning(f"Context overflow at usage {usage}; restarting into a new thread")
            self._record_error(kind.value, str(error), action.value, usage=usage)
            if record is not None:
                record.finalize(TerminationReason.ERROR)
            state.sample_interval = self.monitor.shorten_interval()
            await self._close_thread()
            await self.store.save(state)
            return True

        if action is RecoveryAction.ROLLBACK_AND_RETRY:
            return await self._rollback(error)

        if action is RecoveryAction.RETRY_WITH_BACKOFF:
            return await self._back_off(error)

        if action is RecoveryAction.MANUAL_INTERVENTION and kind is ErrorKind.RATE_LIMITED:
            logger.error(f"Rate limit retries exhausted: {error}")
            await self._block(BlockedReason.RATE_LIMITED_EXHAUSTED, str(error))
            return False

        if action is RecoveryAction.MANUAL_INTERVENTION:
            # Never auto-resolved, and state is left as it is
            raise error

        logger.error(f"Unrecoverable error in iteration {record.number if record else '-'}: {error}")
        self._record_error(
            ErrorKind.UNEXPECTED.value,
            f"{type(error).__name__}: {error}",
            action.value,
            usage=self._last_sample.usage if self._last_sample else None,
        )
        if record is not None:
            record.finalize(TerminationReason.ERROR)
        await self.store.save(state)
        raise error

    async def _rollback(self, error: Exception) -> bool:
        files = getattr(error, "files", [])
        self._execution_retries += 1

        if self.executor is not None and files:
            reverted = await self.executor.revert(list(files))
            if not reverted.ok:
                logger.warning(f"Revert of {files} reported failure: {reverted.message}")

        if self._execution_retries > self.config.execution_max_retries:
            logger.error(f"Execution failed {self._execution_retries} times; blocking")
            await self._block(
                BlockedReason.EXECUTION_RETRIES_EXHAUSTED,
                str(error),
                usage=self._last_sample.usage if self._last_sample else None,
            )
            return False

        logger.warning(
            f"Execution failure, retry {self._execution_retries}/"
            f"{self.config.execution_max_retries} in the same iteration: {error}"
        )
        self._record_error(
            ErrorKind.EXECUTION_FAILURE.value,
            str(error),
            RecoveryAction.ROLLBACK_AND_RETRY.value,
            usage=self._last_sample.usage if self._last_sample else None,
        )
        await self.store.save(self.state)
        return True

    async def _back_off(self, error: Exception) -> bool:
        """Wait out a rate limit raised outside the retry policy, then carry on."""
        delay = RetryContext(config=self.retry_policy.config).calculate_delay(error)
        self._on_rate_limited(0, error, delay)
        await self.store.save(self.state)
        logger.warning(f"Rate limited, waiting {delay:.1f}s: {error}")
        try:
            await cancellable_sleep(delay, self.cancel_event)
        except LoopCancelledError as e:
            await self._stop_cancelled(str(e))
            return False
        return True

    def _on_rate_limited(self, attempt: int, error: Exception, delay: float) -> None:
        self._record_error(
            ErrorKind.RATE_LIMITED.value,
            f"{error} (retry {attempt + 1} in {delay:.1f}s)",
            RecoveryAction.RETRY_WITH_BACKOFF.value,
        )

    async def _block(
        self,
        reason: str,
        message: str,
        classification: Classification | None = None,
        usage: float | None = None,
    ) -> None:
        """Close any open iteration and mark the run blocked."""
        state = self.state
        record = state.current
        if record is not None:
            record.finalize(TerminationReason.ERROR)
        self._record_error(
            reason,
            message,
            RecoveryAction.MANUAL_INTERVENTION.value,
            classification=classification,
            usage=usage,
        )
        state.mark_blocked(reason)
        await self.store.save(state)
        self._set_phase(LoopPhase.BLOCKED)

    async def _stop_cancelled(self, message: str) -> None:
        state = self.state
        if state is None or state.status.is_terminal:
            return

        record = state.current
        if record is not None:
            record.finalize(TerminationReason.CANCELLED)
        self._record_error(
            BlockedReason.CANCELLED,
            message,
            RecoveryAction.STOP.value,
            usage=self._last_sample.usage if self._last_sample else None,
        )
        state.mark_blocked(BlockedReason.CANCELLED)
        await self.store.save(state)
        self._set_phase(LoopPhase.BLOCKED)
        logger.warning(f"Task {state.task_id} cancelled")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _await_cancellable(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the cancellation signal fires first.

        Raises:
            LoopCancelledError: If cancelled before or during the wait.
        """
        if self.cancel_event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise LoopCancelledError("Cancelled before awaiting the model")

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.cancel_event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not work.done():
                work.cancel()

        if work in done:
            return work.result()

        with contextlib.suppress(asyncio.CancelledError):
            await work
        raise LoopCancelledError("Cancelled while awaiting the model")

    async def _close_thread(self) -> None:
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        await self.client.close_thread(handle)

    def _record_error(
        self,
        kind: str,
        message: str,
        action: str,
        classification: Classification | None = None,
        usage: float | None = None,
        iteration: int | None = None,
    ) -> None:
        state = self.state
        if iteration is None:
            iteration = state.current.number if state.current else state.total_iterations
        state.record_error(
            ErrorRecord(
                iteration=iteration,
                timestamp=utcnow(),
                kind=kind,
                message=message,
                action=action,
                classification=classification,
                usage=usage,
            )
        )

    def _set_phase(self, phase: LoopPhase) -> None:
        if phase is self.phase:
            return
        self.transitions.append((self.phase, phase))
        self.phase = phase

    def summary(self) -> dict[str, Any]:
        """Counters for display at the end of a run."""
        state = self.state
        return {
            "task_id": self.task.task_id,
            "status": state.status.value if state else None,
            "blocked_reason": state.blocked_reason if state else None,
            "iterations": state.total_iterations if state else 0,
            "phase": self.phase.value,
            "mean_usage_drift": self.monitor.mean_drift(),
        }
