# Copyright (c) Syntropy Systems
"""Accumulates job outcomes into a run summary."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Callable

from qcpool.models.job import JobState, RunSummary

if TYPE_CHECKING:
    from qcpool.models.job import Outcome

logger = logging.getLogger(__name__)


class RunAggregator:
    """Single owner of the run summary and of fatality decisions.

    Shared by all workers; every mutation happens under one lock.

    With ``werror`` enabled a warned outcome is recorded as failed and
    ``on_escalate`` is called once, with the first escalated outcome.
    Timed out outcomes are never escalated.
    """

    def __init__(
        self,
        total: int,
        *,
        werror: bool = False,
        on_escalate: Callable[[Outcome], None] | None = None,
    ) -> None:
        self.werror = werror
        self.on_escalate = on_escalate
        self._summary = RunSummary(total=total)
        self._lock = threading.Lock()

    def record(self, outcome: Outcome) -> Outcome:
        """Record a terminal outcome.

        Returns:
            The outcome as recorded, which differs from the input when it
            was escalated.

        """
        if not outcome.state.is_terminal:
            msg = f"Outcome for {outcome.label} is not terminal: {outcome.state.value}"
            raise ValueError(msg)

        escalated = False
        if self.werror and outcome.state is JobState.WARNED:
            outcome = outcome.escalate()
            escalated = True

        with self._lock:
            summary = self._summary
            summary.counts[outcome.state] = summary.counts.get(outcome.state, 0) + 1
            summary.outcomes.append(outcome)
            first = False
            if escalated and not summary.stopped_early:
                summary.stopped_early = True
                first = True
            if outcome.state is JobState.FAILED and summary.first_fatal is None:
                summary.first_fatal = outcome

        if first:
            logger.info("Escalating warning from %s, stopping dispatch", outcome.label)
            if self.on_escalate is not None:
                self.on_escalate(outcome)
        return outcome

    def record_delivery_error(self, message: str) -> None:
        with self._lock:
            self._summary.delivery_errors.append(message)

    def finalize(
        self, *, not_dispatched: list[str] | None = None, interrupted: bool = False
    ) -> RunSummary:
        """Return a snapshot of the summary once every dispatched job ended."""
        with self._lock:
            summary = self._summary.model_copy(deep=True)
        summary.not_dispatched = list(not_dispatched or [])
        summary.interrupted = interrupted
        return summary
