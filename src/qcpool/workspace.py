# Copyright (c) Syntropy Systems
"""Per-job scratch directory and single-participant view of the input tree."""

from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from qcpool.errors import JobSetupError

if TYPE_CHECKING:
    from types import TracebackType

    from typing_extensions import Self

    from qcpool.models.job import JobDescriptor

logger = logging.getLogger(__name__)

# Top-level dataset entries linked into every view when present
SHARED_ENTRIES = ("dataset_description.json", "participants.tsv", "sourcedata")


class JobWorkspace:
    """Scratch directory owned by one job.

    The tool is pointed at ``input_view``, a directory holding symlinks to the
    shared dataset files and to this participant's ``sub-<label>`` directory
    only, so it never indexes the whole input tree.  Everything is removed on
    exit.
    """

    job: JobDescriptor
    scratch_dir: Path | None
    input_view: Path | None

    def __init__(self, job: JobDescriptor) -> None:
        self.job = job
        self.scratch_dir = None
        self.input_view = None

    def create(self) -> None:
        """Create the scratch directory and the input view."""
        options = self.job.options
        input_root = options.input_root.resolve()
        participant_dir = input_root / f"sub-{self.job.label}"
        if not participant_dir.is_dir():
            msg = f"Input tree {input_root} is missing participant {self.job.label}"
            raise JobSetupError(msg)

        try:
            self.scratch_dir = Path(
                tempfile.mkdtemp(prefix=f"qcpool-{self.job.label}-", dir=options.work_dir)
            )
        except OSError as e:
            msg = f"Couldn't create temporary directory within {options.work_dir}: {e}"
            raise JobSetupError(msg) from e

        try:
            view = self.scratch_dir / (input_root.name or "input")
            view.mkdir()
            for name in SHARED_ENTRIES:
                src = input_root / name
                if src.exists():
                    (view / name).symlink_to(src)
            (view / participant_dir.name).symlink_to(participant_dir, target_is_directory=True)
        except OSError as e:
            self.cleanup()
            msg = f"Couldn't build input view for {self.job.label}: {e}"
            raise JobSetupError(msg) from e
        self.input_view = view

    def cleanup(self) -> None:
        """Remove the scratch directory."""
        if self.scratch_dir is None:
            return
        # Symlinks are removed, never followed
        try:
            shutil.rmtree(self.scratch_dir)
        except OSError as e:
            logger.warning("Couldn't remove job workspace %s: %s", self.scratch_dir, e)
        self.scratch_dir = None
        self.input_view = None

    def __enter__(self) -> Self:
        self.create()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.cleanup()

