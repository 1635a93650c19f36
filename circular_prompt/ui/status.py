"""Status display for circular prompting runs.

Renders a ProgressState as rich tables for the ``status`` command and for
the summary printed at the end of ``start`` and ``resume``.
"""

from __future__ import annotations

import logging

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from circular_prompt.loop.models import ProgressState, RunStatus, TerminationReason
from circular_prompt.ui.console import get_console

logger = logging.getLogger(__name__)

_STATUS_STYLES = {
    RunStatus.COMPLETE: "success",
    RunStatus.IN_PROGRESS: "info",
    RunStatus.BLOCKED: "error",
}

_REASON_STYLES = {
    TerminationReason.COMPLETION: "green",
    TerminationReason.THRESHOLD: "cyan",
    TerminationReason.ERROR: "red",
    TerminationReason.CANCELLED: "yellow",
}


class StatusDisplay:
    """Formats ProgressState for the terminal."""

    def __init__(self, console: Console | None = None):
        self.console = console or get_console()

    def show_state(self, state: ProgressState, show_errors: bool = True) -> None:
        """Print the overview, the iteration table and the error log.

        Args:
            state: State to render.
            show_errors: Include the ErrorRecord table when there are any.
        """
        style = _STATUS_STYLES.get(state.status, "white")
        self.console.print()
        self.console.print(f"[bold]Task {state.task_id}[/bold]")
        status_line = f"  Status: [{style}]{state.status.value}[/{style}]"
        if state.blocked_reason:
            status_line += f" ({state.blocked_reason})"
        self.console.print(status_line)
        self.console.print(f"  Iterations: {state.total_iterations}")
        self.console.print(f"  Updated: {state.updated_at.isoformat(timespec='seconds')}")

        if state.iterations:
            self.console.print(self.iteration_table(state))
        if show_errors and state.errors:
            self.console.print(self.error_table(state))

    def iteration_table(self, state: ProgressState) -> Table:
        table = Table(title="Iterations", expand=False)
        table.add_column("#", justify="right")
        table.add_column("Started")
        table.add_column("Ended")
        table.add_column("Turns", justify="right")
        table.add_column("Peak usage", justify="right")
        table.add_column("Files", justify="right")
        table.add_column("Resolved", justify="right")
        table.add_column("Found", justify="right")
        table.add_column("Reason")

        for record in state.iterations:
            reason = record.termination_reason
            if reason is None:
                reason_text = "[info]open[/info]"
            else:
                color = _REASON_STYLES.get(reason, "white")
                reason_text = f"[{color}]{reason.value}[/{color}]"
            table.add_row(
                str(record.number),
                record.started_at.strftime("%Y-%m-%d %H:%M:%S"),
                record.ended_at.strftime("%Y-%m-%d %H:%M:%S") if record.ended_at else "-",
                str(record.turns),
                f"{record.peak_usage:.0%}",
                str(len(record.files_modified)),
                str(record.issues_resolved),
                str(record.issues_discovered),
                reason_text,
            )
        return table

    def error_table(self, state: ProgressState) -> Table:
        table = Table(title="Errors", expand=False)
        table.add_column("Iter", justify="right")
        table.add_column("Kind")
        table.add_column("Action")
        table.add_column("Usage", justify="right")
        table.add_column("Message")

        for error in state.errors:
            table.add_row(
                str(error.iteration),
                error.kind,
                error.action,
                f"{error.usage:.0%}" if error.usage is not None else "-",
                escape(error.message),
            )
        return table

    def show_completion(self, state: ProgressState) -> None:
        """One-line verdict for a finished run."""
        if state.status is RunStatus.COMPLETE:
            self.console.print(
                f"[success]✓ Task complete after {state.total_iterations} iteration(s)[/success]"
            )
        elif state.status is RunStatus.BLOCKED:
            self.console.print(
                f"[error]✗ Task blocked: {state.blocked_reason}[/error] "
                f"[dim](manual intervention required)[/dim]"
            )
        else:
            self.console.print("[warning]Task still in progress[/warning]")
