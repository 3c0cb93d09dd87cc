# Copyright (c) Syntropy Systems
"""Pydantic models for qcpool."""

from qcpool.models.job import (
    ExitStatus,
    JobDescriptor,
    JobState,
    Outcome,
    RunOptions,
    RunSummary,
    build_jobs,
)

__all__ = [
    "ExitStatus",
    "JobDescriptor",
    "JobState",
    "Outcome",
    "RunOptions",
    "RunSummary",
    "build_jobs",
]
