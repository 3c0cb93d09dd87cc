# Copyright (c) Syntropy Systems
"""Job, outcome and summary models for a qcpool run."""

from __future__ import annotations

from enum import Enum, IntEnum
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import Field, computed_field

from .base import FrozenModel, QcpoolBaseModel

if TYPE_CHECKING:
    from collections.abc import Iterable


class JobState(str, Enum):
    """Lifecycle state of one participant job."""

    PENDING = "pending"
    RUNNING = "running"
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    WARNED = "warned"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition can happen from this state."""
        return self not in (JobState.PENDING, JobState.RUNNING)


TERMINAL_STATES: tuple[JobState, ...] = tuple(s for s in JobState if s.is_terminal)


class ExitStatus(IntEnum):
    """Process exit status derived from the final run summary."""

    OK = 0
    FAILED = 1
    ESCALATED = 3
    INTERRUPTED = 130


class RunOptions(FrozenModel):
    """Read-only configuration shared by every job of a run."""

    input_root: Path
    output_root: Path
    work_dir: Path
    executable: str = "mriqc"
    extra_args: tuple[str, ...] = ()
    timeout: float | None = Field(default=None, gt=0)
    kill_grace_period: float = Field(default=10.0, ge=0)
    kill_confirm_timeout: float = Field(default=5.0, gt=0)
    output_tail_bytes: int = Field(default=64 * 1024, gt=0)


class JobDescriptor(FrozenModel):
    """One participant's unit of work."""

    label: str = Field(min_length=1)
    index: int = 0
    options: RunOptions

    def argv(self, input_view: Path, scratch_dir: Path) -> list[str]:
        """Build the command line for this participant.

        Args:
            input_view: Input tree the tool should index
            scratch_dir: Private working directory for this invocation

        """
        return [
            self.options.executable,
            str(input_view),
            str(self.options.output_root),
            "participant",
            "--work-dir",
            str(scratch_dir),
            "--participant-label",
            self.label,
            *self.options.extra_args,
        ]


def build_jobs(labels: Iterable[str], options: RunOptions) -> list[JobDescriptor]:
    """Build the job queue in input order.

    Duplicate labels are kept as separate jobs.
    """
    return [
        JobDescriptor(label=label, index=i, options=options)
        for i, label in enumerate(labels)
    ]


class Outcome(FrozenModel):
    """Terminal record of one job."""

    label: str
    state: JobState
    duration: float = 0.0
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    error: str | None = None
    escalated: bool = False

    @property
    def diagnostics(self) -> str:
        """Captured output, stderr first since it usually explains failures."""
        parts = [p.strip() for p in (self.stderr, self.stdout) if p.strip()]
        return "\n".join(parts)

    def escalate(self) -> Outcome:
        """Return a copy reclassified from warned to failed."""
        return self.model_copy(update={"state": JobState.FAILED, "escalated": True})


class RunSummary(QcpoolBaseModel):
    """Aggregate result of a run."""

    total: int = 0
    counts: dict[JobState, int] = Field(
        default_factory=lambda: dict.fromkeys(TERMINAL_STATES, 0)
    )
    first_fatal: Outcome | None = None
    stopped_early: bool = False
    interrupted: bool = False
    not_dispatched: list[str] = Field(default_factory=list)
    delivery_errors: list[str] = Field(default_factory=list)
    outcomes: list[Outcome] = Field(default_factory=list)

    @computed_field
    @property
    def success(self) -> bool:
        """True when no job failed and the run was not interrupted."""
        return self.counts.get(JobState.FAILED, 0) == 0 and not self.interrupted

    @computed_field
    @property
    def finished(self) -> int:
        """Number of jobs that reached a terminal state."""
        return sum(self.counts.values())

    @property
    def exit_status(self) -> ExitStatus:
        """Exit status for the whole process."""
        if self.interrupted:
            return ExitStatus.INTERRUPTED
        if self.stopped_early:
            return ExitStatus.ESCALATED
        if not self.success:
            return ExitStatus.FAILED
        return ExitStatus.OK
