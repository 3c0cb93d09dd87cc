# Copyright (c) Syntropy Systems
"""qcpool run command."""
from __future__ import annotations

import logging
import os
import signal
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from qcpool.config import load_config, resolve_executable
from qcpool.models.job import RunOptions, build_jobs
from qcpool.scheduler import Scheduler

from .progress import ProgressDisplay, build_summary_table

if TYPE_CHECKING:
    from types import FrameType

    from qcpool.events import Listener
    from qcpool.models.job import JobDescriptor, RunSummary

console = Console(stderr=True)

# Exit status for bad arguments or unusable directories, as for usage errors
USAGE_EXIT = 2


def run(
    ctx: typer.Context,
    input_root: Path = typer.Argument(
        ...,
        help="Root of the input dataset (BIDS directory)",
    ),
    output_root: Path = typer.Argument(
        ...,
        help="Directory the tool writes results to",
    ),
    participant_label: list[str] = typer.Option(
        ...,
        "--participant-label", "-p",
        help="Participant to process; repeat or separate with commas",
    ),
    parallel: int = typer.Option(
        1,
        "-n",
        help="Number of participants to process at once",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Kill a participant's process after this many minutes",
    ),
    resume: bool = typer.Option(
        False,
        "--resume",
        help="Skip participants whose output already exists",
    ),
    werror: bool = typer.Option(
        False,
        "--werror",
        help="Treat a non-zero exit as fatal and stop starting participants",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet", "-q",
        help="Only print errors",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Print debug logging",
    ),
    work_dir: Optional[Path] = typer.Option(
        None,
        "--work-dir", "-w",
        help="Parent of each participant's scratch directory [default: system temp]",
    ),
    mriqc: Optional[str] = typer.Option(
        None,
        "--mriqc",
        envvar="MRIQC",
        help="Path or name of the tool to run",
    ),
    report: Optional[Path] = typer.Option(
        None,
        "--report",
        help="Write the run summary and every outcome as JSON",
    ),
) -> None:
    """Run the analysis tool once per participant, N at a time.

    Use -- to pass extra arguments to every invocation:

        qcpool run /data/bids /data/out -p bob -p susan -n 2 -- -m T1w --no-sub

    Exit status is 0 when no participant failed, 1 when some failed,
    3 when --werror stopped the run early and 130 when interrupted.
    """
    configure_logging(quiet=quiet, verbose=verbose)

    labels = [
        label.strip()
        for value in participant_label
        for label in value.split(",")
        if label.strip()
    ]
    if not labels:
        _usage_error("No participant labels given")
    if parallel < 1:
        _usage_error(f"-n must be at least 1, got {parallel}")
    if timeout is not None and timeout <= 0:
        _usage_error(f"--timeout must be positive, got {timeout}")

    if work_dir is None:
        work_dir = Path(tempfile.gettempdir())
    problem = check_directories(input_root, output_root, work_dir)
    if problem:
        _usage_error(problem)

    config = load_config()
    options = RunOptions(
        input_root=input_root,
        output_root=output_root,
        work_dir=work_dir,
        executable=resolve_executable(mriqc, config),
        extra_args=tuple(ctx.args),
        timeout=timeout * 60 if timeout is not None else None,
        kill_grace_period=config.kill_grace_period,
        kill_confirm_timeout=config.kill_confirm_timeout,
        output_tail_bytes=config.output_tail_bytes,
    )
    jobs = build_jobs(labels, options)

    if quiet:
        summary = _run_scheduler(jobs, parallel, resume, werror, [])
    else:
        console.print(
            f"Running {options.executable} on {len(jobs)} participant(s), "
            f"{parallel} at a time. This could take a long time; "
            "press Ctrl+C to stop starting new participants..."
        )
        with ProgressDisplay(console, len(jobs)) as display:
            summary = _run_scheduler(jobs, parallel, resume, werror, [display])
        _print_summary(summary)

    if report is not None:
        report.parent.mkdir(parents=True, exist_ok=True)
        _ = report.write_text(summary.model_dump_json(indent=2))

    raise typer.Exit(int(summary.exit_status))


def _run_scheduler(
    jobs: list[JobDescriptor],
    parallel: int,
    resume: bool,
    werror: bool,
    listeners: list[Listener],
) -> RunSummary:
    scheduler = Scheduler(
        jobs,
        concurrency=parallel,
        resume=resume,
        werror=werror,
        listeners=listeners,
    )

    def _signal_handler(signum: int, frame: FrameType | None) -> None:
        """Handle SIGINT/SIGTERM by starting no further participants."""
        scheduler.interrupt()

    previous = {
        sig: signal.signal(sig, _signal_handler)
        for sig in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        return scheduler.run()
    finally:
        for sig, handler in previous.items():
            _ = signal.signal(sig, handler)


def check_directories(input_root: Path, output_root: Path, work_dir: Path) -> str | None:
    """Return a message describing the first unusable directory, if any."""
    try:
        _ = os.listdir(input_root)
    except OSError as e:
        return f"Couldn't read input directory {input_root}: {e.strerror or e}"

    for label, path in (("Output", output_root), ("Working", work_dir)):
        try:
            with tempfile.TemporaryDirectory(dir=path):
                pass
        except OSError as e:
            return f"{label} directory is not writable: {path}: {e.strerror or e}"
    return None


def configure_logging(*, quiet: bool, verbose: bool) -> None:
    """Send library logging through rich on stderr."""
    level = logging.INFO
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _print_summary(summary: RunSummary) -> None:
    console.print(build_summary_table(summary))
    if summary.first_fatal is not None:
        console.print(f"[red]First failure:[/red] {escape(summary.first_fatal.label)}")
    if summary.delivery_errors:
        console.print(
            f"[red]{len(summary.delivery_errors)} process(es) could not be confirmed dead[/red]"
        )
    if summary.interrupted:
        console.print("[yellow]Interrupted.[/yellow]")
    elif summary.success:
        console.print("[green]...all done.[/green]")


def _usage_error(message: str) -> None:
    console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(USAGE_EXIT)
