"""Live, in-memory view of what every running job is doing.

The registry is for display only: it is neither durable nor authoritative.
Finished jobs stay readable for a short grace window so a renderer polling
concurrently still sees the terminal status; expiry is checked on access, so
no timers or threads are involved.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Literal, Mapping

from .events import (
    ActivityUpdated,
    JobCompleted,
    MonitorEvent,
    MonitorObserver,
    PhaseChanged,
    RetryAttempted,
    StuckWarningRaised,
    ToolCallStarted,
)
from .stream import ContentBlock, StreamMessage, coerce_message

logger = logging.getLogger(__name__)

ActivityStatus = Literal["running", "stuck_warning", "retrying", "completed", "failed"]
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})

THINKING_PREVIEW_LENGTH = 100
COMMAND_PREVIEW_LENGTH = 40


@dataclass(frozen=True, slots=True)
class ToolCallInfo:
    name: str
    args: str
    started_at: datetime


@dataclass(slots=True)
class AgentActivity:
    job_id: str
    requirement_id: str
    requirement_title: str
    phase: str
    agent_type: str
    started_at: datetime
    last_activity_at: datetime
    current_tool_call: ToolCallInfo | None = None
    thinking_preview: str | None = None
    retry_count: int = 0
    status: ActivityStatus = "running"


@dataclass(frozen=True, slots=True)
class ProgressInfo:
    completed: int
    total: int
    percentage: int


def shorten_path(path: str) -> str:
    parts = path.split("/")
    if len(parts) <= 2:
        return path
    return "/".join(parts[-2:])


def summarize_tool_args(tool_name: str, tool_input: Any) -> str:
    """Render a one-line summary of a tool call's arguments."""

    if not isinstance(tool_input, Mapping) or not tool_input:
        return ""

    if tool_name in {"Read", "Write", "Edit", "MultiEdit"}:
        return shorten_path(str(tool_input.get("file_path", "")))
    if tool_name == "Glob":
        return str(tool_input.get("pattern", ""))
    if tool_name == "Grep":
        return f'"{tool_input.get("pattern", "")}" in {shorten_path(str(tool_input.get("path") or "."))}'
    if tool_name == "Bash":
        command = str(tool_input.get("command", ""))
        if len(command) > COMMAND_PREVIEW_LENGTH:
            return command[:COMMAND_PREVIEW_LENGTH] + "..."
        return command
    if tool_name == "Task":
        return str(tool_input.get("description", ""))
    return ""


def thinking_preview(text: str) -> str | None:
    for line in text.split("\n"):
        if line.strip():
            return line[:THINKING_PREVIEW_LENGTH]
    return None


class ActivityMonitor:
    """Aggregates streamed activity into per-job snapshots and notifies observers.

    All updates for one job must come from a single writer (its event
    stream); different jobs may report concurrently, and readers may take
    snapshots at any time.
    """

    def __init__(
        self,
        *,
        completion_grace: float = 5.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._completion_grace = timedelta(seconds=completion_grace)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._activities: dict[str, AgentActivity] = {}
        self._removal_deadlines: dict[str, datetime] = {}
        self._phase_started: dict[tuple[str, str], datetime] = {}
        self._observers: list[MonitorObserver] = []
        self._started_at = self._clock()
        self._total_jobs = 0
        self._completed_jobs = 0

    # Observers

    def subscribe(self, observer: MonitorObserver) -> Callable[[], None]:
        """Register ``observer``; the returned callable unsubscribes it."""

        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _emit(self, event: MonitorEvent) -> None:
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                logger.exception("Monitor observer failed", extra={"event": event.kind, "job_id": event.job_id})

    def _emit_activity(self, activity: AgentActivity) -> None:
        self._emit(ActivityUpdated(job_id=activity.job_id, activity=replace(activity)))

    # Registry access

    def _purge_expired(self) -> None:
        now = self._clock()
        with self._lock:
            expired = [job_id for job_id, deadline in self._removal_deadlines.items() if now >= deadline]
            for job_id in expired:
                self._removal_deadlines.pop(job_id, None)
                self._activities.pop(job_id, None)
            if expired:
                gone = set(expired)
                for key in [key for key in self._phase_started if key[0] in gone]:
                    del self._phase_started[key]

    def _live(self, job_id: str) -> AgentActivity | None:
        """Return the mutable record for a job that can still change."""

        self._purge_expired()
        activity = self._activities.get(job_id)
        if activity is None or activity.status in TERMINAL_STATUSES:
            return None
        return activity

    # Reporting

    def start_job(
        self,
        job_id: str,
        requirement_id: str,
        requirement_title: str,
        phase: str,
        agent_type: str,
    ) -> None:
        now = self._clock()
        activity = AgentActivity(
            job_id=job_id,
            requirement_id=requirement_id,
            requirement_title=requirement_title,
            phase=phase,
            agent_type=agent_type,
            started_at=now,
            last_activity_at=now,
        )
        with self._lock:
            self._removal_deadlines.pop(job_id, None)
            self._activities[job_id] = activity
            self._total_jobs += 1
        self._emit_activity(activity)

    def report_activity(self, job_id: str, message: StreamMessage | dict[str, Any]) -> None:
        activity = self._live(job_id)
        if activity is None:
            return

        message = coerce_message(message)
        activity.last_activity_at = self._clock()
        if activity.status in {"stuck_warning", "retrying"}:
            activity.status = "running"
        for block in message.content_blocks():
            self._process_block(activity, block)
        self._emit_activity(activity)

    def _process_block(self, activity: AgentActivity, block: ContentBlock) -> None:
        if block.type == "thinking":
            if block.thinking:
                activity.thinking_preview = thinking_preview(block.thinking)
        elif block.type == "text":
            activity.thinking_preview = None
        elif block.type == "tool_use":
            tool_call = ToolCallInfo(
                name=block.name or "unknown",
                args=summarize_tool_args(block.name or "", block.input),
                started_at=self._clock(),
            )
            activity.current_tool_call = tool_call
            activity.thinking_preview = None
            self._emit(ToolCallStarted(job_id=activity.job_id, tool_call=tool_call))
        elif block.type == "tool_result":
            activity.current_tool_call = None

    def report_phase_change(self, job_id: str, phase: str) -> None:
        activity = self._live(job_id)
        if activity is None:
            return

        now = self._clock()
        activity.phase = phase
        activity.last_activity_at = now
        with self._lock:
            self._phase_started[(job_id, phase)] = now
        self._emit(PhaseChanged(job_id=job_id, phase=phase))
        self._emit_activity(activity)

    def report_stuck_warning(self, job_id: str, seconds_since_activity: int) -> None:
        activity = self._live(job_id)
        if activity is None:
            return

        activity.status = "stuck_warning"
        self._emit(StuckWarningRaised(job_id=job_id, seconds_since_activity=seconds_since_activity))
        self._emit_activity(activity)

    def report_retry(self, job_id: str, attempt: int, max_attempts: int) -> None:
        activity = self._live(job_id)
        if activity is None:
            return

        activity.retry_count += 1
        activity.status = "retrying"
        activity.last_activity_at = self._clock()
        activity.current_tool_call = None
        activity.thinking_preview = None
        self._emit(RetryAttempted(job_id=job_id, attempt=attempt, max_attempts=max_attempts))
        self._emit_activity(activity)

    def complete_job(self, job_id: str, success: bool) -> None:
        activity = self._live(job_id)
        if activity is None:
            return

        activity.status = "completed" if success else "failed"
        activity.current_tool_call = None
        activity.thinking_preview = None
        with self._lock:
            self._completed_jobs += 1
            self._removal_deadlines[job_id] = self._clock() + self._completion_grace
        logger.info("Job finished", extra={"job_id": job_id, "success": success})
        self._emit(JobCompleted(job_id=job_id, success=success))
        self._emit_activity(activity)

    # Queries

    def get_activities(self) -> list[AgentActivity]:
        self._purge_expired()
        with self._lock:
            return [replace(activity) for activity in self._activities.values()]

    def get_activity(self, job_id: str) -> AgentActivity | None:
        self._purge_expired()
        activity = self._activities.get(job_id)
        return replace(activity) if activity is not None else None

    def get_elapsed_time(self) -> int:
        return int((self._clock() - self._started_at).total_seconds())

    def get_phase_elapsed_time(self, job_id: str, phase: str) -> int:
        self._purge_expired()
        started = self._phase_started.get((job_id, phase))
        if started is None:
            return 0
        return int((self._clock() - started).total_seconds())

    def get_overall_progress(self) -> ProgressInfo:
        total = self._total_jobs
        completed = self._completed_jobs
        percentage = int(completed * 100 / total + 0.5) if total > 0 else 0
        return ProgressInfo(completed=completed, total=total, percentage=percentage)

    def set_total_jobs(self, total: int) -> None:
        if total < 0:
            raise ValueError("total must be >= 0")
        self._total_jobs = total

    def reset(self) -> None:
        """Forget every job and restart the clock for a new run."""

        with self._lock:
            self._activities.clear()
            self._removal_deadlines.clear()
            self._phase_started.clear()
            self._started_at = self._clock()
            self._total_jobs = 0
            self._completed_jobs = 0


__all__ = [
    "ActivityMonitor",
    "ActivityStatus",
    "AgentActivity",
    "ProgressInfo",
    "TERMINAL_STATUSES",
    "ToolCallInfo",
    "shorten_path",
    "summarize_tool_args",
    "thinking_preview",
]
