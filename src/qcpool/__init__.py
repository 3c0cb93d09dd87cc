"""
qcpool - Bounded-concurrency runner for participant-level analysis tools.

Run one tool invocation per participant, a few at a time.
"""

from qcpool.models.job import ExitStatus, JobDescriptor, JobState, Outcome, RunOptions, RunSummary, build_jobs
from qcpool.scheduler import Scheduler

__version__ = "0.1.0"
__all__ = [
    "ExitStatus",
    "JobDescriptor",
    "JobState",
    "Outcome",
    "RunOptions",
    "RunSummary",
    "Scheduler",
    "__version__",
    "build_jobs",
]
