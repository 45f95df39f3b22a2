"""Supervision of streaming agent jobs: liveness and live activity."""

from .events import (
    ActivityUpdated,
    JobCompleted,
    MonitorEvent,
    MonitorObserver,
    PhaseChanged,
    QueueObserver,
    RetryAttempted,
    StuckWarningRaised,
    ToolCallStarted,
)
from .monitor import (
    ActivityMonitor,
    AgentActivity,
    ProgressInfo,
    ToolCallInfo,
    summarize_tool_args,
)
from .stream import ContentBlock, StreamMessage, coerce_message
from .stuck_detector import JobState, StuckDetector, StuckStatus, StuckThresholds

__all__ = [
    "ActivityMonitor",
    "ActivityUpdated",
    "AgentActivity",
    "ContentBlock",
    "JobCompleted",
    "JobState",
    "MonitorEvent",
    "MonitorObserver",
    "PhaseChanged",
    "ProgressInfo",
    "QueueObserver",
    "RetryAttempted",
    "StreamMessage",
    "StuckDetector",
    "StuckStatus",
    "StuckThresholds",
    "StuckWarningRaised",
    "ToolCallInfo",
    "ToolCallStarted",
    "coerce_message",
    "summarize_tool_args",
]
