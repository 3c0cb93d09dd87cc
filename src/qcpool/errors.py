# Copyright (c) Syntropy Systems
"""Exceptions raised by qcpool."""

from __future__ import annotations


class QcpoolError(Exception):
    """Base class for qcpool errors."""


class ProbeError(QcpoolError):
    """The output root could not be inspected for a participant."""

    def __init__(self, label: str, cause: OSError) -> None:
        self.label = label
        self.cause = cause
        super().__init__(f"Couldn't check existing output for {label}: {cause}")


class JobSetupError(QcpoolError):
    """The per-job workspace could not be prepared."""


class SpawnError(QcpoolError):
    """The external tool could not be launched."""

    def __init__(self, argv: list[str], cause: OSError) -> None:
        self.argv = argv
        self.cause = cause
        super().__init__(f"Couldn't launch {argv[0]}: {cause}")


class TerminationError(QcpoolError):
    """A timed out process could not be confirmed dead."""

    def __init__(self, label: str, pid: int, detail: str) -> None:
        self.label = label
        self.pid = pid
        super().__init__(f"Couldn't terminate process {pid} for {label}: {detail}")
