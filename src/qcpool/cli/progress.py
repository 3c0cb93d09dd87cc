# Copyright (c) Syntropy Systems
"""Rich progress display driven by scheduler events."""
from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from rich.markup import escape
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)
from rich.table import Table

from qcpool.events import (
    DeliveryError,
    DispatchHalted,
    JobFinished,
    JobStarted,
    RunFinished,
)
from qcpool.models.job import TERMINAL_STATES, JobState

if TYPE_CHECKING:
    from types import TracebackType

    from rich.console import Console
    from typing_extensions import Self

    from qcpool.events import Event
    from qcpool.models.job import Outcome, RunSummary

STATE_STYLES: dict[JobState, str] = {
    JobState.SUCCEEDED: "green",
    JobState.SKIPPED: "dim",
    JobState.WARNED: "yellow",
    JobState.FAILED: "red",
    JobState.TIMED_OUT: "magenta",
}

# Lines of captured output shown under a warning
TAIL_LINES = 20


def format_duration(seconds: float) -> str:
    """Format a duration in seconds."""
    total_seconds = int(seconds)
    if total_seconds < 60:
        return f"{total_seconds}s"
    if total_seconds < 3600:
        m, s = divmod(total_seconds, 60)
        return f"{m}m {s}s"
    h, rem = divmod(total_seconds, 3600)
    m, _ = divmod(rem, 60)
    return f"{h}h {m}m"


class ProgressDisplay:
    """Overall bar plus one spinner per running participant."""

    def __init__(self, console: Console, total: int) -> None:
        self.console = console
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            TimeRemainingColumn(),
            console=console,
            transient=True,
        )
        self._overall = self.progress.add_task("participants", total=total)
        self._running: dict[str, list[TaskID]] = {}
        self._lock = threading.RLock()

    def __enter__(self) -> Self:
        self.progress.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.progress.stop()

    def __call__(self, event: Event) -> None:
        with self._lock:
            if isinstance(event, JobStarted):
                task = self.progress.add_task(
                    f"[blue]{escape(event.label)}[/blue]", total=None
                )
                self._running.setdefault(event.label, []).append(task)
            elif isinstance(event, JobFinished):
                self._finish(event.outcome)
            elif isinstance(event, DispatchHalted):
                self.console.print(
                    f"[yellow]Stopping:[/yellow] {escape(event.reason)}; "
                    "waiting for running participants..."
                )
            elif isinstance(event, DeliveryError):
                self.console.print(f"[red]Error:[/red] {escape(event.message)}")
            elif isinstance(event, RunFinished):
                self.progress.refresh()

    def _finish(self, outcome: Outcome) -> None:
        tasks = self._running.get(outcome.label)
        if tasks:
            self.progress.remove_task(tasks.pop(0))
        self.progress.advance(self._overall)
        print_outcome(self.console, outcome)


def print_outcome(console: Console, outcome: Outcome) -> None:
    """Print one line for a finished participant."""
    style = STATE_STYLES.get(outcome.state, "white")
    line = (
        f"[{style}]{outcome.state.value}[/{style}] {escape(outcome.label)} "
        f"[dim]({format_duration(outcome.duration)})[/dim]"
    )
    if outcome.escalated:
        line += " [red](warning treated as error)[/red]"
    console.print(line)
    if outcome.state in (JobState.WARNED, JobState.FAILED, JobState.TIMED_OUT):
        if outcome.error:
            console.print(f"  [dim]{escape(outcome.error)}[/dim]", highlight=False)
        tail = outcome.diagnostics.splitlines()[-TAIL_LINES:]
        for text in tail:
            console.print(f"  {text}", markup=False, highlight=False)


def build_summary_table(summary: RunSummary) -> Table:
    """Build the final per-state table."""
    table = Table(title="Run summary", show_header=True, header_style="bold")
    table.add_column("State", width=12)
    table.add_column("Count", justify="right", width=6)
    for state in TERMINAL_STATES:
        style = STATE_STYLES.get(state, "white")
        table.add_row(f"[{style}]{state.value}[/{style}]", str(summary.counts.get(state, 0)))
    if summary.not_dispatched:
        table.add_row("[dim]not started[/dim]", str(len(summary.not_dispatched)))
    return table
