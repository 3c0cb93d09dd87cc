# Copyright (c) Syntropy Systems
"""Detect participants whose output already exists."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

from qcpool.errors import ProbeError

if TYPE_CHECKING:
    from qcpool.models.job import JobDescriptor

logger = logging.getLogger(__name__)


class CompletionProbe:
    """Read-only check of the output root for a participant's artifacts.

    Anything named ``sub-<label>`` or ``sub-<label>_*`` that is a non-empty
    file or a non-empty directory counts as existing output.
    """

    def __init__(self, output_root: Path) -> None:
        self.output_root = output_root

    def check(self, label: str) -> bool:
        """Return whether output exists, raising ProbeError on access failure."""
        name = f"sub-{label}"
        try:
            with os.scandir(self.output_root) as entries:
                for entry in entries:
                    if entry.name != name and not entry.name.startswith(f"{name}_"):
                        continue
                    if _has_content(Path(entry.path)):
                        return True
        except FileNotFoundError:
            # Nothing written yet
            return False
        except OSError as e:
            raise ProbeError(label, e) from e
        return False

    def is_complete(self, job: JobDescriptor) -> bool:
        """Return whether the job can be skipped.

        Access errors are logged and reported as not complete so that
        uncertain state never skips work.
        """
        try:
            return self.check(job.label)
        except ProbeError as e:
            logger.warning("%s; running participant anyway", e)
            return False


def _has_content(path: Path) -> bool:
    if path.is_dir():
        return any(True for _ in path.iterdir())
    return path.is_file() and path.stat().st_size > 0
