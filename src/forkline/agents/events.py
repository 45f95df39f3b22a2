"""Notifications the activity monitor delivers to renderers."""

from __future__ import annotations

import queue
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, ClassVar, Union

if TYPE_CHECKING:
    from .monitor import AgentActivity, ToolCallInfo


@dataclass(frozen=True, slots=True)
class ActivityUpdated:
    kind: ClassVar[str] = "activity"
    job_id: str
    activity: "AgentActivity"


@dataclass(frozen=True, slots=True)
class ToolCallStarted:
    kind: ClassVar[str] = "tool_call"
    job_id: str
    tool_call: "ToolCallInfo"


@dataclass(frozen=True, slots=True)
class StuckWarningRaised:
    kind: ClassVar[str] = "stuck_warning"
    job_id: str
    seconds_since_activity: int


@dataclass(frozen=True, slots=True)
class RetryAttempted:
    kind: ClassVar[str] = "retry"
    job_id: str
    attempt: int
    max_attempts: int


@dataclass(frozen=True, slots=True)
class PhaseChanged:
    kind: ClassVar[str] = "phase_change"
    job_id: str
    phase: str


@dataclass(frozen=True, slots=True)
class JobCompleted:
    kind: ClassVar[str] = "job_complete"
    job_id: str
    success: bool


MonitorEvent = Union[
    ActivityUpdated,
    ToolCallStarted,
    StuckWarningRaised,
    RetryAttempted,
    PhaseChanged,
    JobCompleted,
]

MonitorObserver = Callable[[MonitorEvent], None]


class QueueObserver:
    """Buffers events for a renderer that polls instead of being called back.

    Safe to drain from a different thread than the one reporting activity.
    """

    def __init__(self, *, kinds: set[str] | None = None) -> None:
        self._kinds = kinds
        self._queue: queue.SimpleQueue[MonitorEvent] = queue.SimpleQueue()

    def __call__(self, event: MonitorEvent) -> None:
        if self._kinds is None or event.kind in self._kinds:
            self._queue.put(event)

    def drain(self) -> list[MonitorEvent]:
        events: list[MonitorEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events


__all__ = [
    "ActivityUpdated",
    "JobCompleted",
    "MonitorEvent",
    "MonitorObserver",
    "PhaseChanged",
    "QueueObserver",
    "RetryAttempted",
    "StuckWarningRaised",
    "ToolCallStarted",
]
