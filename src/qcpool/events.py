# Copyright (c) Syntropy Systems
"""Status events emitted by the scheduler for presentation layers."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Union

from typing_extensions import TypeAlias

if TYPE_CHECKING:
    from qcpool.models.job import Outcome, RunSummary

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobStarted:
    """A job acquired a slot and is about to run."""

    label: str
    index: int


@dataclass(frozen=True)
class JobFinished:
    """A job reached a terminal state."""

    outcome: Outcome


@dataclass(frozen=True)
class DeliveryError:
    """A timed out process could not be confirmed dead."""

    label: str
    message: str


@dataclass(frozen=True)
class DispatchHalted:
    """No further jobs will be dispatched."""

    reason: str


@dataclass(frozen=True)
class RunFinished:
    """All dispatched jobs have terminated."""

    summary: RunSummary


Event: TypeAlias = Union[JobStarted, JobFinished, DeliveryError, DispatchHalted, RunFinished]
Listener: TypeAlias = Callable[[Event], None]


class EventBus:
    """Fans events out to listeners.

    Listeners are called synchronously from worker threads, one event at a
    time.  The lock is reentrant so a signal handler on the main thread can
    emit while the main thread is emitting.
    """

    def __init__(self, listeners: list[Listener] | None = None) -> None:
        self._listeners: list[Listener] = list(listeners or [])
        self._lock = threading.RLock()

    def emit(self, event: Event) -> None:
        with self._lock:
            for listener in self._listeners:
                try:
                    listener(event)
                except Exception:
                    logger.exception("Event listener failed on %s", type(event).__name__)
