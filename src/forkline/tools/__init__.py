"""Tool registration for the Forkline MCP server."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..agents.monitor import AgentActivity
from ..config import ForklineSettings
from ..context import RunContext
from ..storage import Worktree
from ..worktrees import (
    NotAGitRepositoryError,
    WorktreeCreationError,
    WorktreeHealthChecker,
    WorktreeManager,
    WorktreeNotFoundError,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    create_worktree: Any
    list_worktrees: Any
    merge_worktree: Any
    cleanup_worktree: Any
    worktree_health: Any
    list_activities: Any
    job_status: Any


def worktree_payload(worktree: Worktree) -> dict[str, Any]:
    return {
        "id": worktree.id,
        "session_id": worktree.session_id,
        "requirement_id": worktree.requirement_id,
        "branch_name": worktree.branch_name,
        "worktree_path": str(worktree.worktree_path),
        "status": worktree.status,
        "created_at": worktree.created_at.isoformat(),
        "merged_at": worktree.merged_at.isoformat() if worktree.merged_at else None,
    }


def activity_payload(activity: AgentActivity) -> dict[str, Any]:
    tool_call = activity.current_tool_call
    return {
        "job_id": activity.job_id,
        "requirement_id": activity.requirement_id,
        "requirement_title": activity.requirement_title,
        "phase": activity.phase,
        "agent_type": activity.agent_type,
        "status": activity.status,
        "started_at": activity.started_at.isoformat(),
        "last_activity_at": activity.last_activity_at.isoformat(),
        "current_tool_call": (
            {
                "name": tool_call.name,
                "args": tool_call.args,
                "started_at": tool_call.started_at.isoformat(),
            }
            if tool_call
            else None
        ),
        "thinking_preview": activity.thinking_preview,
        "retry_count": activity.retry_count,
    }


def register_tools(
    server: FastMCP,
    *,
    settings: ForklineSettings,
    worktree_manager: WorktreeManager | None,
    health_checker: WorktreeHealthChecker | None,
    run_context: RunContext,
    unavailable_reason: str | None = None,
) -> ToolHandles:
    """Register Forkline's MCP tools on the server."""

    def _require_manager() -> WorktreeManager:
        if worktree_manager is None:
            raise RuntimeError(
                f"Worktree tools are unavailable: {unavailable_reason or 'git or state store missing'}"
            )
        return worktree_manager

    def _require_health_checker() -> WorktreeHealthChecker:
        if health_checker is None:
            raise RuntimeError(
                f"Worktree health checks are unavailable: {unavailable_reason or 'git or state store missing'}"
            )
        return health_checker

    async def _create_worktree(
        session_id: str,
        requirement_id: str,
        slug: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create an isolated branch and checkout for a requirement."""

        manager = _require_manager()
        try:
            worktree = await manager.create(session_id, requirement_id, slug)
        except (NotAGitRepositoryError, WorktreeCreationError) as exc:
            _emit_log(
                context,
                "warning",
                "Worktree creation failed",
                extra={"requirement_id": requirement_id, "error": str(exc)},
            )
            raise RuntimeError(str(exc)) from exc

        _emit_log(
            context,
            "info",
            "Created worktree",
            extra={"worktree_id": worktree.id, "branch": worktree.branch_name},
        )
        return worktree_payload(worktree)

    async def _list_worktrees(
        session_id: str,
        active_only: bool = False,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """List the worktrees recorded for a session."""

        manager = _require_manager()
        worktrees = await manager.list(session_id)
        if active_only:
            worktrees = [worktree for worktree in worktrees if worktree.status == "active"]
        _emit_log(
            context,
            "debug",
            "Listing worktrees",
            extra={"session_id": session_id, "count": len(worktrees)},
        )
        return [worktree_payload(worktree) for worktree in worktrees]

    async def _merge_worktree(
        worktree_id: str,
        target_branch: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Merge a worktree's branch into the target branch and clean it up."""

        manager = _require_manager()
        target = target_branch or settings.target_branch
        result = await manager.merge(worktree_id, target)
        _emit_log(
            context,
            "info" if result.success else "warning",
            "Merged worktree" if result.success else "Merge did not complete",
            extra={"worktree_id": worktree_id, "target": target, "error": result.error},
        )
        return {
            "worktree_id": worktree_id,
            "target_branch": target,
            "success": result.success,
            "conflict_files": result.conflict_files,
            "error": result.error,
        }

    async def _cleanup_worktree(worktree_id: str, context: Context | None = None) -> dict[str, Any]:
        """Remove a worktree's checkout without merging it."""

        manager = _require_manager()
        try:
            await manager.cleanup(worktree_id)
        except WorktreeNotFoundError as exc:
            raise ValueError(str(exc)) from exc

        worktree = manager.get_worktree_info(worktree_id)
        _emit_log(context, "info", "Cleaned up worktree", extra={"worktree_id": worktree_id})
        return {
            "worktree_id": worktree_id,
            "status": worktree.status if worktree else None,
        }

    async def _worktree_health(
        session_id: str,
        repair: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Report drift between git worktrees and recorded state, optionally repairing it."""

        checker = _require_health_checker()
        health = await checker.check_health(session_id)
        payload: dict[str, Any] = {
            "session_id": session_id,
            "healthy": health.healthy,
            "is_git_repo": health.is_git_repo,
            "git_worktrees": [asdict(info) for info in health.git_worktrees],
            "recorded_worktrees": [worktree_payload(worktree) for worktree in health.store_worktrees],
            "issues": [asdict(issue) for issue in health.issues],
        }
        if repair and health.issues:
            repaired = await checker.repair(health.issues)
            payload["repair"] = {
                "success": repaired.success,
                "fixed": repaired.fixed,
                "failed": repaired.failed,
            }

        _emit_log(
            context,
            "info" if health.healthy else "warning",
            "Worktree health check",
            extra={"session_id": session_id, "issues": len(health.issues), "repair": repair},
        )
        return payload

    def _list_activities(context: Context | None = None) -> dict[str, Any]:
        """Snapshot what every running job is doing, plus overall progress."""

        monitor = run_context.monitor
        progress = monitor.get_overall_progress()
        activities = [activity_payload(activity) for activity in monitor.get_activities()]
        _emit_log(context, "debug", "Listing activities", extra={"count": len(activities)})
        return {
            "activities": activities,
            "progress": asdict(progress),
            "elapsed_seconds": monitor.get_elapsed_time(),
        }

    def _job_status(job_id: str, context: Context | None = None) -> dict[str, Any]:
        """Report a job's live activity and whether it looks stuck."""

        activity = run_context.monitor.get_activity(job_id)
        if activity is None:
            raise ValueError(f"Job '{job_id}' not found")

        payload: dict[str, Any] = {"activity": activity_payload(activity), "stuck": None}
        handle = run_context.get_job(job_id)
        if handle is not None:
            status = run_context.stuck_detector.peek_job(job_id)
            payload["stuck"] = {
                "stuck": status.stuck,
                "warning": status.warning,
                "reason": status.reason,
                "seconds_since_activity": status.seconds_since_activity,
                "seconds_until_timeout": status.seconds_until_timeout,
            }
        _emit_log(context, "debug", "Job status", extra={"job_id": job_id, "status": activity.status})
        return payload

    tool_create = server.tool(
        name="create_worktree",
        description=(
            "Create an isolated git worktree and feature branch for a requirement. "
            "Reattaches the branch if an earlier attempt left it behind."
        ),
    )(_create_worktree)

    tool_list = server.tool(
        name="list_worktrees",
        description="List worktrees recorded for a session (set active_only to hide merged/abandoned).",
    )(_list_worktrees)

    tool_merge = server.tool(
        name="merge_worktree",
        description=(
            "Merge a worktree branch into the target branch with a merge commit. "
            "Conflicting merges are aborted and the conflicting files reported."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Checks out the target branch in the project root; run one merge at a time",
            }
        },
    )(_merge_worktree)

    tool_cleanup = server.tool(
        name="cleanup_worktree",
        description="Remove a worktree checkout without merging; active records become abandoned.",
    )(_cleanup_worktree)

    tool_health = server.tool(
        name="worktree_health",
        description="Detect orphaned, stale, locked or abandoned worktrees; set repair=true to fix them.",
    )(_worktree_health)

    tool_activities = server.tool(
        name="list_activities",
        description="Show the live activity of every job and overall run progress.",
    )(_list_activities)

    tool_job_status = server.tool(
        name="job_status",
        description="Fetch one job's live activity and its stuck-detection status.",
    )(_job_status)

    return ToolHandles(
        create_worktree=tool_create,
        list_worktrees=tool_list,
        merge_worktree=tool_merge,
        cleanup_worktree=tool_cleanup,
        worktree_health=tool_health,
        list_activities=tool_activities,
        job_status=tool_job_status,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log through the MCP request context's logger when it has one."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        log_method = getattr(ctx_logger, level, None) if ctx_logger is not None else None
        if callable(log_method):
            log_method(message, extra=payload)
            return

    getattr(logger, level, logger.info)(message, extra=payload)


__all__ = ["ToolHandles", "activity_payload", "register_tools", "worktree_payload"]
