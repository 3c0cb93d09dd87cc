# Copyright (c) Syntropy Systems
"""Tests for the run aggregator."""

from __future__ import annotations

import threading

import pytest

from qcpool.aggregator import RunAggregator
from qcpool.models.job import ExitStatus, JobState, Outcome


def _outcome(label: str, state: JobState, exit_code: int | None = None) -> Outcome:
    return Outcome(label=label, state=state, exit_code=exit_code)


class TestRunAggregator:
    """Tests for outcome accumulation and escalation."""

    def test_counts_per_state(self) -> None:
        agg = RunAggregator(4)
        _ = agg.record(_outcome("a", JobState.SUCCEEDED, 0))
        _ = agg.record(_outcome("b", JobState.SKIPPED))
        _ = agg.record(_outcome("c", JobState.WARNED, 1))
        _ = agg.record(_outcome("d", JobState.TIMED_OUT))

        summary = agg.finalize()

        assert summary.total == 4
        assert summary.finished == 4
        assert summary.counts[JobState.SUCCEEDED] == 1
        assert summary.counts[JobState.SKIPPED] == 1
        assert summary.counts[JobState.WARNED] == 1
        assert summary.counts[JobState.TIMED_OUT] == 1
        assert summary.success
        assert summary.first_fatal is None
        assert summary.exit_status is ExitStatus.OK

    def test_spawn_failure_fails_run(self) -> None:
        agg = RunAggregator(2)
        _ = agg.record(_outcome("a", JobState.SUCCEEDED, 0))
        _ = agg.record(_outcome("b", JobState.FAILED))

        summary = agg.finalize()

        assert not summary.success
        assert summary.first_fatal is not None
        assert summary.first_fatal.label == "b"
        assert not summary.stopped_early
        assert summary.exit_status is ExitStatus.FAILED

    def test_werror_escalates_warning(self) -> None:
        escalations: list[Outcome] = []
        agg = RunAggregator(2, werror=True, on_escalate=escalations.append)

        recorded = agg.record(_outcome("bob", JobState.WARNED, 1))

        assert recorded.state is JobState.FAILED
        assert recorded.escalated
        assert [o.label for o in escalations] == ["bob"]
        summary = agg.finalize(not_dispatched=["susan"])
        assert summary.counts[JobState.FAILED] == 1
        assert summary.counts[JobState.WARNED] == 0
        assert summary.stopped_early
        assert summary.not_dispatched == ["susan"]
        assert summary.exit_status is ExitStatus.ESCALATED

    def test_werror_never_escalates_timeouts(self) -> None:
        escalations: list[Outcome] = []
        agg = RunAggregator(1, werror=True, on_escalate=escalations.append)

        recorded = agg.record(_outcome("bob", JobState.TIMED_OUT))

        assert recorded.state is JobState.TIMED_OUT
        assert escalations == []
        assert agg.finalize().success

    def test_escalation_signalled_once(self) -> None:
        escalations: list[Outcome] = []
        agg = RunAggregator(3, werror=True, on_escalate=escalations.append)

        _ = agg.record(_outcome("a", JobState.WARNED, 1))
        _ = agg.record(_outcome("b", JobState.WARNED, 2))

        summary = agg.finalize()
        assert len(escalations) == 1
        assert summary.first_fatal is not None
        assert summary.first_fatal.label == "a"
        assert summary.counts[JobState.FAILED] == 2

    def test_escalation_after_plain_failure(self) -> None:
        escalations: list[Outcome] = []
        agg = RunAggregator(3, werror=True, on_escalate=escalations.append)

        _ = agg.record(_outcome("a", JobState.FAILED))
        _ = agg.record(_outcome("b", JobState.WARNED, 1))

        summary = agg.finalize(not_dispatched=["c"])
        assert [o.label for o in escalations] == ["b"]
        assert summary.first_fatal is not None
        assert summary.first_fatal.label == "a"
        assert summary.stopped_early
        assert summary.exit_status is ExitStatus.ESCALATED

    def test_rejects_non_terminal_outcome(self) -> None:
        agg = RunAggregator(1)

        with pytest.raises(ValueError, match="not terminal"):
            _ = agg.record(_outcome("a", JobState.RUNNING))

    def test_delivery_errors_recorded(self) -> None:
        agg = RunAggregator(1)
        agg.record_delivery_error("Couldn't terminate process 42 for bob")

        assert agg.finalize().delivery_errors == ["Couldn't terminate process 42 for bob"]

    def test_finalize_returns_snapshot(self) -> None:
        agg = RunAggregator(2)
        _ = agg.record(_outcome("a", JobState.SUCCEEDED, 0))
        summary = agg.finalize()
        _ = agg.record(_outcome("b", JobState.SUCCEEDED, 0))

        assert summary.finished == 1

    def test_concurrent_records_are_not_lost(self) -> None:
        agg = RunAggregator(400)
        states = [JobState.SUCCEEDED, JobState.WARNED, JobState.SKIPPED, JobState.TIMED_OUT]

        def record_many(offset: int) -> None:
            for i in range(100):
                _ = agg.record(_outcome(f"{offset}-{i}", states[offset]))

        threads = [threading.Thread(target=record_many, args=(i,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10.0)

        summary = agg.finalize()
        assert summary.finished == 400
        assert all(summary.counts[state] == 100 for state in states)
        assert len(summary.outcomes) == 400
