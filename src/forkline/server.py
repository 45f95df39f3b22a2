"""FastMCP server bootstrap for Forkline."""

import asyncio
import json
import logging
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import ForklineSettings, get_settings
from .context import RunContext
from .git import GitNotFoundError, GitRunner, GitRunnerError
from .storage import ChromaStore, ChromaUnavailableError, WorktreeStore
from .tools import activity_payload, register_tools
from .worktrees import WorktreeHealthChecker, WorktreeManager

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the Forkline server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def create_server(
    settings: Optional[ForklineSettings] = None,
    git_runner: GitRunner | None = None,
    store: WorktreeStore | None = None,
    run_context: RunContext | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server, degrading gracefully without git or Chroma."""

    settings = settings or get_settings()
    run_context = run_context or RunContext.from_settings(settings)

    git_metadata: dict[str, Any] = {
        "available": False,
        "path": settings.git_path,
        "version": None,
        "error": None,
    }
    if git_runner is None:
        try:
            git_runner = GitRunner(settings.git_path)
        except GitNotFoundError as exc:
            git_metadata["error"] = str(exc)
    if git_runner is not None:
        git_metadata["available"] = True
        try:
            version_result = _run_sync(git_runner.version())
        except GitRunnerError as exc:
            git_metadata["error"] = str(exc)
        else:
            if version_result.ok:
                git_metadata["version"] = version_result.stdout.strip()
            else:
                git_metadata["error"] = version_result.error_text

    store_metadata: dict[str, Any] = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "error": None,
    }
    if store is None:
        try:
            chroma_store = ChromaStore(settings.chroma_persist_path)
            chroma_store.ping()
            store = chroma_store
        except ChromaUnavailableError as exc:
            store_metadata["error"] = str(exc)
    if store is not None:
        store_metadata["available"] = True

    worktree_manager: WorktreeManager | None = None
    health_checker: WorktreeHealthChecker | None = None
    unavailable_reason: str | None = None
    if git_runner is None:
        unavailable_reason = f"git executable not found ({git_metadata['error']})"
    elif store is None:
        unavailable_reason = f"state store unavailable ({store_metadata['error']})"
    else:
        worktree_manager = WorktreeManager(
            settings.project_path,
            store,
            runner=git_runner,
            control_dir=settings.control_dir,
            default_target_branch=settings.target_branch,
        )
        health_checker = WorktreeHealthChecker(
            settings.project_path,
            store,
            runner=git_runner,
            control_dir=settings.control_dir,
            abandoned_after=timedelta(hours=settings.abandoned_after_hours),
        )

    server = FastMCP(
        name="Forkline MCP",
        version=__version__,
        instructions=(
            "Forkline runs requirements concurrently in isolated git worktrees and "
            "supervises each running job for forward progress. Use the provided tools "
            "to create, merge and repair worktrees and to observe live job activity."
        ),
    )

    handles = register_tools(
        server,
        settings=settings,
        worktree_manager=worktree_manager,
        health_checker=health_checker,
        run_context=run_context,
        unavailable_reason=unavailable_reason,
    )

    @server.resource(
        "resource://forkline/status",
        name="forkline_status",
        title="Forkline MCP Status",
        description="Provides the current runtime status for the Forkline MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        worktree_summary = []
        storage_error = None
        if store is not None:
            try:
                worktree_summary = [
                    {
                        "id": record.id,
                        "requirement_id": record.requirement_id,
                        "branch_name": record.branch_name,
                        "status": record.status,
                    }
                    for record in store.list_worktrees()[-5:]
                ]
            except ChromaUnavailableError as exc:
                storage_error = str(exc)

        monitor = run_context.monitor
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "project_path": str(settings.project_path),
            "target_branch": settings.target_branch,
            "git": git_metadata,
            "storage": {
                **store_metadata,
                "worktrees_preview": worktree_summary,
                "error": storage_error or store_metadata["error"],
            },
            "jobs": {
                "active": run_context.active_jobs(),
                "activities": [activity_payload(activity) for activity in monitor.get_activities()],
                "progress": asdict(monitor.get_overall_progress()),
                "elapsed_seconds": monitor.get_elapsed_time(),
            },
            "stuck_thresholds": {
                "idle_timeout": settings.idle_timeout_seconds,
                "thinking_timeout": settings.thinking_timeout_seconds,
                "tool_timeout": settings.tool_timeout_seconds,
                "warning_threshold": settings.warning_threshold,
            },
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "git_runner", git_runner)
    setattr(server, "git_metadata", git_metadata)
    setattr(server, "store", store)
    setattr(server, "store_metadata", store_metadata)
    setattr(server, "worktree_manager", worktree_manager)
    setattr(server, "health_checker", health_checker)
    setattr(server, "run_context", run_context)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Forkline MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logger.info(
        "Launching Forkline MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "git_available": getattr(server, "git_metadata", {}).get("available"),
            "store_available": getattr(server, "store_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
