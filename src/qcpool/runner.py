# Copyright (c) Syntropy Systems
"""Process runner with deadline enforcement and orphan prevention."""
from __future__ import annotations

import contextlib
import ctypes
import logging
import os
import signal
import subprocess
import sys
import threading
import time
from collections import deque
from typing import IO, TYPE_CHECKING

from qcpool.errors import JobSetupError, SpawnError, TerminationError
from qcpool.models.job import JobState, Outcome
from qcpool.workspace import JobWorkspace

if TYPE_CHECKING:
    from qcpool.models.job import JobDescriptor

logger = logging.getLogger(__name__)

# Reader threads are abandoned after this long if a descendant keeps a pipe open
READER_JOIN_TIMEOUT = 5.0

_libc: ctypes.CDLL | None = None
if sys.platform == "linux":
    try:
        _libc = ctypes.CDLL(None, use_errno=True)
    except OSError:
        _libc = None


def setup_pdeathsig() -> None:
    """Set PDEATHSIG so the child dies when its spawning thread dies.

    Runs between fork and exec, so it only touches the libc handle loaded
    at import time.  Only works on Linux.
    """
    if _libc is None:
        return
    pr_set_pdeathsig = 1
    _libc.prctl(pr_set_pdeathsig, signal.SIGKILL)


class TailBuffer:
    """Keeps the last ``limit`` bytes read from a stream."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.dropped = 0
        self._chunks: deque[bytes] = deque()
        self._size = 0

    def feed(self, data: bytes) -> None:
        self._chunks.append(data)
        self._size += len(data)
        while self._size > self.limit:
            head = self._chunks.popleft()
            excess = self._size - self.limit
            if len(head) > excess:
                self._chunks.appendleft(head[excess:])
                self._size -= excess
                self.dropped += excess
            else:
                self._size -= len(head)
                self.dropped += len(head)

    def drain(self, stream: IO[bytes]) -> None:
        """Read ``stream`` to EOF, then close it."""
        with contextlib.suppress(OSError, ValueError), stream:
            while True:
                data = stream.read1(65536)  # type: ignore[attr-defined]
                if not data:
                    break
                self.feed(data)

    def text(self) -> str:
        body = b"".join(self._chunks).decode("utf-8", errors="replace")
        if self.dropped:
            return f"[... {self.dropped} bytes truncated ...]\n{body}"
        return body


class ProcessRunner:
    """Runs the external tool for one job.

    Features:
    - Uses start_new_session=True so a timeout can signal the whole group
    - Sets PDEATHSIG on Linux to prevent orphans
    - Captures the tail of stdout/stderr without blocking on large output
    - Races process exit against the job deadline; the first event wins
    """

    job: JobDescriptor
    env: dict[str, str]
    termination_error: TerminationError | None
    _process: subprocess.Popen[bytes] | None
    _exited: threading.Event

    def __init__(self, job: JobDescriptor, env: dict[str, str] | None = None) -> None:
        """Initialize a process runner.

        Args:
            job: Job to run
            env: Additional environment variables for the tool

        """
        self.job = job
        self.env = os.environ.copy()
        self.env["QCPOOL_PARTICIPANT"] = job.label
        if env:
            self.env.update(env)
        self.termination_error = None
        self._process = None
        self._exited = threading.Event()

    def run(self, timeout: float | None = None) -> Outcome:
        """Run the job to a terminal state.

        Args:
            timeout: Seconds before the process is killed, replacing the
                job's configured timeout. None keeps the configured value,
                and only a job configured without a timeout waits forever.

        Returns:
            The job's Outcome. A failed kill is recorded on
            ``termination_error`` and does not change the outcome.

        """
        if timeout is None:
            timeout = self.job.options.timeout
        started = time.monotonic()

        workspace = JobWorkspace(self.job)
        try:
            workspace.create()
        except JobSetupError as e:
            return self._outcome(JobState.FAILED, started, error=str(e))

        try:
            return self._run_in(workspace, timeout, started)
        finally:
            workspace.cleanup()

    def _run_in(self, workspace: JobWorkspace, timeout: float | None, started: float) -> Outcome:
        assert workspace.scratch_dir is not None
        assert workspace.input_view is not None
        argv = self.job.argv(workspace.input_view, workspace.scratch_dir)
        env = dict(self.env, QCPOOL_WORK_DIR=str(workspace.scratch_dir))
        limit = self.job.options.output_tail_bytes
        stdout, stderr = TailBuffer(limit), TailBuffer(limit)

        try:
            process = self._spawn(argv, env, workspace)
        except SpawnError as e:
            return self._outcome(JobState.FAILED, started, error=str(e))

        readers = [
            threading.Thread(target=stdout.drain, args=(process.stdout,), daemon=True),
            threading.Thread(target=stderr.drain, args=(process.stderr,), daemon=True),
        ]
        for reader in readers:
            reader.start()
        waiter = threading.Thread(target=self._wait, daemon=True)
        waiter.start()

        timed_out = not self._exited.wait(timeout)
        if timed_out:
            logger.info("Participant %s exceeded %ss, terminating", self.job.label, timeout)
            try:
                self.terminate()
            except TerminationError as e:
                logger.error("%s", e)
                self.termination_error = e

        for reader in readers:
            reader.join(READER_JOIN_TIMEOUT)

        if timed_out:
            return self._outcome(
                JobState.TIMED_OUT,
                started,
                stdout=stdout.text(),
                stderr=stderr.text(),
                error=f"Timed out after {timeout}s",
            )

        code = process.returncode
        if code == 0:
            return self._outcome(
                JobState.SUCCEEDED, started, code, stdout.text(), stderr.text()
            )
        return self._outcome(
            JobState.WARNED,
            started,
            code,
            stdout.text(),
            stderr.text(),
            error=f"{argv[0]} exited with status {code}",
        )

    def _spawn(
        self, argv: list[str], env: dict[str, str], workspace: JobWorkspace
    ) -> subprocess.Popen[bytes]:
        try:
            # PDEATHSIG fires when the spawning thread exits; pool threads
            # outlive the jobs they run.
            self._process = subprocess.Popen(  # noqa: S603
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                cwd=str(workspace.scratch_dir),
                start_new_session=True,  # Creates new process group
                preexec_fn=setup_pdeathsig if sys.platform == "linux" else None,  # noqa: PLW1509
            )
        except OSError as e:
            raise SpawnError(argv, e) from e
        logger.debug("Started %s (pid %d)", self.job.label, self._process.pid)
        return self._process

    def _wait(self) -> None:
        assert self._process is not None
        self._process.wait()
        self._exited.set()

    def terminate(self) -> int:
        """Kill the job's process group.

        Sends SIGTERM to the process group, waits for the configured grace
        period, then sends SIGKILL to whatever is left of the group.

        Returns:
            Exit code of the killed process (negative signal number)

        Raises:
            TerminationError: If the process is still alive after SIGKILL

        """
        if self._process is None:
            msg = "Process was never started"
            raise RuntimeError(msg)

        options = self.job.options
        pgid = self._process.pid
        errors: list[str] = []

        self._signal_group(pgid, signal.SIGTERM, errors)
        _ = self._exited.wait(options.kill_grace_period)

        # Descendants can outlive the group leader; SIGKILL the group regardless
        self._signal_group(pgid, signal.SIGKILL, errors)
        if not self._exited.wait(options.kill_confirm_timeout):
            detail = "; ".join(errors) or "still running after SIGKILL"
            raise TerminationError(self.job.label, pgid, detail)

        return self._process.returncode

    def _signal_group(self, pgid: int, sig: signal.Signals, errors: list[str]) -> None:
        assert self._process is not None
        try:
            if hasattr(os, "killpg"):
                os.killpg(pgid, sig)
            else:
                self._process.send_signal(sig)
        except ProcessLookupError:
            # Group already gone
            return
        except OSError as e:
            errors.append(f"{sig.name}: {e}")

    def _outcome(
        self,
        state: JobState,
        started: float,
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
        error: str | None = None,
    ) -> Outcome:
        return Outcome(
            label=self.job.label,
            state=state,
            duration=time.monotonic() - started,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            error=error,
        )

    @property
    def is_running(self) -> bool:
        """Check if the process is still running."""
        return self._process is not None and not self._exited.is_set()
