"""Per-run wiring of the stuck detector and the activity monitor.

A ``RunContext`` owns one detector and one monitor for the lifetime of an
orchestration run. Each job is driven through a ``JobHandle``, the single
writer for that job's state in both components.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable

from .agents.monitor import ActivityMonitor
from .agents.stream import StreamMessage, coerce_message
from .agents.stuck_detector import StuckDetector, StuckStatus, StuckThresholds
from .config import ForklineSettings

logger = logging.getLogger(__name__)


class JobHandle:
    """Forward one job's streamed output to the detector and the monitor."""

    def __init__(self, context: "RunContext", job_id: str) -> None:
        self._context = context
        self._job_id = job_id
        self._closed = False

    @property
    def job_id(self) -> str:
        return self._job_id

    @property
    def closed(self) -> bool:
        return self._closed

    def report_message(self, message: StreamMessage | dict[str, Any]) -> None:
        if self._closed:
            return
        message = coerce_message(message)
        detector = self._context.stuck_detector
        blocks = message.content_blocks()
        if not blocks:
            detector.record_output(self._job_id)
        for block in blocks:
            detector.update_from_content_type(self._job_id, block.type)
        self._context.monitor.report_activity(self._job_id, message)

    def check(self) -> StuckStatus:
        """Poll the detector; a first warning is also shown on the monitor."""

        status = self._context.stuck_detector.check_job(self._job_id)
        if status.warning and not status.stuck and not self._closed:
            self._context.monitor.report_stuck_warning(self._job_id, status.seconds_since_activity)
        return status

    def report_phase_change(self, phase: str) -> None:
        if not self._closed:
            self._context.monitor.report_phase_change(self._job_id, phase)

    def report_retry(self, attempt: int, max_attempts: int) -> None:
        if self._closed:
            return
        self._context.stuck_detector.reset_warning(self._job_id)
        self._context.monitor.report_retry(self._job_id, attempt, max_attempts)

    def complete(self, success: bool) -> None:
        if self._closed:
            return
        self._closed = True
        self._context.stuck_detector.stop_tracking(self._job_id)
        self._context.monitor.complete_job(self._job_id, success)
        self._context._release(self._job_id)


class RunContext:
    def __init__(self, stuck_detector: StuckDetector, monitor: ActivityMonitor) -> None:
        self.stuck_detector = stuck_detector
        self.monitor = monitor
        self._handles: dict[str, JobHandle] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: ForklineSettings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> "RunContext":
        return cls(
            StuckDetector(StuckThresholds.from_settings(settings), clock=clock),
            ActivityMonitor(completion_grace=settings.completion_grace_seconds, clock=clock),
        )

    def start_job(
        self,
        job_id: str,
        *,
        requirement_id: str,
        requirement_title: str,
        phase: str,
        agent_type: str,
    ) -> JobHandle:
        with self._lock:
            if job_id in self._handles:
                raise ValueError(f"Job '{job_id}' is already running")
            handle = JobHandle(self, job_id)
            self._handles[job_id] = handle

        self.stuck_detector.start_tracking(job_id)
        self.monitor.start_job(job_id, requirement_id, requirement_title, phase, agent_type)
        logger.info("Started job", extra={"job_id": job_id, "requirement_id": requirement_id, "phase": phase})
        return handle

    def get_job(self, job_id: str) -> JobHandle | None:
        return self._handles.get(job_id)

    def active_jobs(self) -> list[str]:
        with self._lock:
            return sorted(self._handles)

    def _release(self, job_id: str) -> None:
        with self._lock:
            self._handles.pop(job_id, None)

    def close(self) -> None:
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        if handles:
            logger.warning("Closing run with live jobs", extra={"jobs": [h.job_id for h in handles]})
        for handle in handles:
            handle._closed = True
        self.stuck_detector.clear()
        self.monitor.reset()

    def __enter__(self) -> "RunContext":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


__all__ = ["JobHandle", "RunContext"]
