"""Liveness classification for streaming agent jobs.

Each tracked job is in one of three timeout regimes, chosen from the shape of
its latest activity and checked in this order:

* thinking: inside a reasoning block, measured from the last output of any kind
* tool: a tool call is executing, measured from when it started
* idle: neither, measured from the last substantive output

Reasoning output keeps a job out of the idle regime but is not progress, so it
never refreshes ``last_substantive_output``. The detector only classifies;
acting on a stuck job is up to the caller.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Literal

from ..config import ForklineSettings
from .stream import ContentType

logger = logging.getLogger(__name__)

StuckReason = Literal["idle_timeout", "thinking_timeout", "tool_timeout"]


@dataclass(frozen=True, slots=True)
class StuckThresholds:
    idle_timeout: float = 120.0
    thinking_timeout: float = 180.0
    tool_timeout: float = 300.0
    warning_threshold: float = 0.75

    @classmethod
    def from_settings(cls, settings: ForklineSettings) -> "StuckThresholds":
        return cls(
            idle_timeout=settings.idle_timeout_seconds,
            thinking_timeout=settings.thinking_timeout_seconds,
            tool_timeout=settings.tool_timeout_seconds,
            warning_threshold=settings.warning_threshold,
        )


@dataclass(slots=True)
class JobState:
    job_id: str
    last_any_output: datetime
    last_substantive_output: datetime
    is_in_thinking_block: bool = False
    current_tool_start: datetime | None = None
    warning_issued: bool = False


@dataclass(frozen=True, slots=True)
class StuckStatus:
    stuck: bool
    warning: bool
    seconds_since_activity: int
    seconds_until_timeout: float
    reason: StuckReason | None = None


class StuckDetector:
    """Per-job state machine that flags jobs which stopped making progress."""

    def __init__(
        self,
        thresholds: StuckThresholds | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._thresholds = thresholds or StuckThresholds()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._states: dict[str, JobState] = {}

    @property
    def thresholds(self) -> StuckThresholds:
        return self._thresholds

    def start_tracking(self, job_id: str) -> None:
        now = self._clock()
        self._states[job_id] = JobState(job_id=job_id, last_any_output=now, last_substantive_output=now)

    def stop_tracking(self, job_id: str) -> None:
        self._states.pop(job_id, None)

    def is_tracking(self, job_id: str) -> bool:
        return job_id in self._states

    def update_from_content_type(self, job_id: str, content_type: ContentType | str) -> None:
        state = self._states.get(job_id)
        if state is None:
            return

        now = self._clock()
        state.last_any_output = now
        if content_type == "thinking":
            state.is_in_thinking_block = True
        elif content_type == "text":
            state.is_in_thinking_block = False
            state.last_substantive_output = now
            state.current_tool_start = None
        elif content_type == "tool_use":
            state.is_in_thinking_block = False
            state.current_tool_start = now
            state.last_substantive_output = now
        elif content_type == "tool_result":
            state.current_tool_start = None
            state.last_substantive_output = now
        else:
            logger.debug("Unrecognized content type", extra={"job_id": job_id, "content_type": content_type})

        # Fresh activity cancels a pending escalation.
        state.warning_issued = False

    def record_output(self, job_id: str) -> None:
        """Note raw output that carries no classifiable content."""

        state = self._states.get(job_id)
        if state is not None:
            state.last_any_output = self._clock()

    def _regime(self, state: JobState) -> tuple[StuckReason, float, datetime]:
        if state.is_in_thinking_block:
            return "thinking_timeout", self._thresholds.thinking_timeout, state.last_any_output
        if state.current_tool_start is not None:
            return "tool_timeout", self._thresholds.tool_timeout, state.current_tool_start
        return "idle_timeout", self._thresholds.idle_timeout, state.last_substantive_output

    def check_job(self, job_id: str) -> StuckStatus:
        """Poll ``job_id``; the approaching-timeout warning is returned once per episode."""

        return self._evaluate(job_id, consume_warning=True)

    def peek_job(self, job_id: str) -> StuckStatus:
        """Like ``check_job`` but read-only: ``warning`` reflects the regime, not the one-shot flag."""

        return self._evaluate(job_id, consume_warning=False)

    def _evaluate(self, job_id: str, *, consume_warning: bool) -> StuckStatus:
        state = self._states.get(job_id)
        if state is None:
            return StuckStatus(stuck=False, warning=False, seconds_since_activity=0, seconds_until_timeout=math.inf)

        reason, timeout, since = self._regime(state)
        elapsed = (self._clock() - since).total_seconds()
        seconds_since_activity = math.floor(elapsed)
        seconds_until_timeout = math.floor(timeout - elapsed)

        if elapsed > timeout:
            return StuckStatus(
                stuck=True,
                warning=True,
                reason=reason,
                seconds_since_activity=seconds_since_activity,
                seconds_until_timeout=0,
            )

        in_warning_zone = elapsed > timeout * self._thresholds.warning_threshold
        if in_warning_zone and not (consume_warning and state.warning_issued):
            if consume_warning:
                state.warning_issued = True
                logger.info(
                    "Job approaching stuck timeout",
                    extra={"job_id": job_id, "reason": reason, "seconds_since_activity": seconds_since_activity},
                )
            return StuckStatus(
                stuck=False,
                warning=True,
                reason=reason,
                seconds_since_activity=seconds_since_activity,
                seconds_until_timeout=seconds_until_timeout,
            )

        return StuckStatus(
            stuck=False,
            warning=False,
            seconds_since_activity=seconds_since_activity,
            seconds_until_timeout=seconds_until_timeout,
        )

    def get_state(self, job_id: str) -> JobState | None:
        state = self._states.get(job_id)
        return replace(state) if state is not None else None

    def reset_warning(self, job_id: str) -> None:
        """Give a retried job a fresh start so it is not flagged again at once."""

        state = self._states.get(job_id)
        if state is None:
            return
        now = self._clock()
        state.warning_issued = False
        state.last_any_output = now
        state.last_substantive_output = now
        state.is_in_thinking_block = False
        state.current_tool_start = None

    def clear(self) -> None:
        self._states.clear()


__all__ = ["JobState", "StuckDetector", "StuckReason", "StuckStatus", "StuckThresholds"]
