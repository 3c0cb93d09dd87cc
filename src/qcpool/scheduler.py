# Copyright (c) Syntropy Systems
"""Bounded worker pool that runs participant jobs."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Callable

from qcpool.aggregator import RunAggregator
from qcpool.events import (
    DeliveryError,
    DispatchHalted,
    EventBus,
    JobFinished,
    JobStarted,
    RunFinished,
)
from qcpool.models.job import JobState, Outcome
from qcpool.probe import CompletionProbe
from qcpool.runner import ProcessRunner

if TYPE_CHECKING:
    from collections.abc import Sequence

    from qcpool.events import Listener
    from qcpool.models.job import JobDescriptor, RunSummary

logger = logging.getLogger(__name__)

RunnerFactory = Callable[["JobDescriptor"], ProcessRunner]


class SlotPool:
    """Counts free execution slots.

    ``acquire`` blocks until a slot is free or the pool is cancelled;
    cancellation wakes every waiter.
    """

    def __init__(self, size: int) -> None:
        if size < 1:
            msg = f"Concurrency must be at least 1, got {size}"
            raise ValueError(msg)
        self.size = size
        self._in_use = 0
        self._peak = 0
        self._cancelled: str | None = None
        self._cond = threading.Condition()

    def acquire(self) -> bool:
        """Take a slot. Returns False if cancelled instead."""
        with self._cond:
            while self._in_use >= self.size and self._cancelled is None:
                self._cond.wait()
            if self._cancelled is not None:
                return False
            self._in_use += 1
            self._peak = max(self._peak, self._in_use)
            return True

    def release(self) -> None:
        with self._cond:
            if self._in_use <= 0:
                msg = "Released a slot that was not held"
                raise RuntimeError(msg)
            self._in_use -= 1
            self._cond.notify_all()

    def cancel(self, reason: str) -> bool:
        """Stop handing out slots. Returns False if already cancelled."""
        with self._cond:
            if self._cancelled is not None:
                return False
            self._cancelled = reason
            self._cond.notify_all()
            return True

    def wait_idle(self) -> None:
        with self._cond:
            while self._in_use:
                self._cond.wait()

    @property
    def peak(self) -> int:
        """Highest number of slots held at once."""
        with self._cond:
            return self._peak


class Scheduler:
    """Runs jobs with at most ``concurrency`` external processes at once.

    Jobs are dispatched in queue order. Each dispatched job holds a slot
    while the completion probe runs and, unless it is skipped, while its
    process runs. Completion order is not guaranteed.

    ``cancel()`` stops dispatch; jobs already running are left to finish or
    time out.
    """

    def __init__(
        self,
        jobs: Sequence[JobDescriptor],
        *,
        concurrency: int = 1,
        resume: bool = False,
        werror: bool = False,
        probe: CompletionProbe | None = None,
        runner_factory: RunnerFactory | None = None,
        listeners: list[Listener] | None = None,
    ) -> None:
        self.jobs = list(jobs)
        self.resume = resume
        self.slots = SlotPool(concurrency)
        self.events = EventBus(listeners)
        self.aggregator = RunAggregator(
            len(self.jobs), werror=werror, on_escalate=self._on_escalate
        )
        if probe is None and resume and self.jobs:
            probe = CompletionProbe(self.jobs[0].options.output_root)
        self._probe = probe
        self._runner_factory = runner_factory or ProcessRunner
        self._interrupted = False

    @property
    def concurrency(self) -> int:
        return self.slots.size

    def cancel(self, reason: str) -> None:
        """Stop dispatching new jobs."""
        if self.slots.cancel(reason):
            logger.info("Dispatch halted: %s", reason)
            self.events.emit(DispatchHalted(reason))

    def interrupt(self) -> None:
        """Stop dispatching on operator request."""
        self._interrupted = True
        self.cancel("interrupted")

    def run(self) -> RunSummary:
        """Dispatch every job and return the summary once all have ended."""
        not_dispatched: list[str] = []
        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="qcpool-worker"
        ) as pool:
            for position, job in enumerate(self.jobs):
                if not self.slots.acquire():
                    not_dispatched = [j.label for j in self.jobs[position:]]
                    break
                try:
                    _ = pool.submit(self._run_job, job)
                except BaseException:
                    self.slots.release()
                    raise
            self.slots.wait_idle()

        if not_dispatched:
            logger.info("%d participant(s) were not started", len(not_dispatched))
        summary = self.aggregator.finalize(
            not_dispatched=not_dispatched, interrupted=self._interrupted
        )
        self.events.emit(RunFinished(summary))
        return summary

    def _run_job(self, job: JobDescriptor) -> None:
        try:
            outcome = self._execute(job)
        except Exception as e:
            logger.exception("Unexpected error running %s", job.label)
            outcome = Outcome(label=job.label, state=JobState.FAILED, error=repr(e))
        try:
            recorded = self.aggregator.record(outcome)
            self.events.emit(JobFinished(recorded))
        finally:
            self.slots.release()

    def _execute(self, job: JobDescriptor) -> Outcome:
        if self.resume and self._probe is not None and self._probe.is_complete(job):
            logger.debug("Skipping %s, output already present", job.label)
            return Outcome(label=job.label, state=JobState.SKIPPED)

        self.events.emit(JobStarted(job.label, job.index))
        runner = self._runner_factory(job)
        outcome = runner.run()
        if runner.termination_error is not None:
            message = str(runner.termination_error)
            self.aggregator.record_delivery_error(message)
            self.events.emit(DeliveryError(job.label, message))
        return outcome

    def _on_escalate(self, outcome: Outcome) -> None:
        self.cancel(f"werror: {outcome.label} exited with status {outcome.exit_code}")

    @property
    def peak_running(self) -> int:
        return self.slots.peak
