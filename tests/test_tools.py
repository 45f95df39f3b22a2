from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from forkline.config import ForklineSettings
from forkline.context import RunContext
from forkline.git import FakeGitRunner, GitExecutionResult
from forkline.storage import ChromaStore
from forkline.tools import register_tools
from forkline.worktrees import WorktreeHealthChecker, WorktreeManager


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name)
            self._tools[tool_name] = tool
            return tool

        return decorator


class StubLogger:
    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict]] = []

    def info(self, message, extra=None):
        self.records.append(("info", message, extra or {}))

    def warning(self, message, extra=None):
        self.records.append(("warning", message, extra or {}))

    def debug(self, message, extra=None):
        self.records.append(("debug", message, extra or {}))


class StubContext:
    def __init__(self) -> None:
        self.logger = StubLogger()


def _ok(stdout: str = "") -> GitExecutionResult:
    return GitExecutionResult(args=("git",), returncode=0, stdout=stdout, stderr="")


def _fail(stderr: str) -> GitExecutionResult:
    return GitExecutionResult(args=("git",), returncode=1, stdout="", stderr=stderr)


def _register(tmp_path: Path, store: ChromaStore, clock, responses=None, *, with_git: bool = True):
    server = StubServer()
    settings = ForklineSettings(project_path=tmp_path, target_branch="develop")
    runner = FakeGitRunner(responses or [])
    manager = WorktreeManager(tmp_path, store, runner=runner, clock=clock) if with_git else None
    checker = WorktreeHealthChecker(tmp_path, store, runner=runner, clock=clock) if with_git else None
    run_context = RunContext.from_settings(settings, clock=clock)
    handles = register_tools(
        server,
        settings=settings,
        worktree_manager=manager,
        health_checker=checker,
        run_context=run_context,
        unavailable_reason=None if with_git else "git executable not found",
    )
    return server, handles, runner, run_context


def test_all_tools_registered(tmp_path: Path, store: ChromaStore, clock) -> None:
    server, handles, _, _ = _register(tmp_path, store, clock)

    assert set(server._tools) == {
        "create_worktree",
        "list_worktrees",
        "merge_worktree",
        "cleanup_worktree",
        "worktree_health",
        "list_activities",
        "job_status",
    }
    assert handles.merge_worktree.name == "merge_worktree"


def test_create_and_list_worktrees(tmp_path: Path, store: ChromaStore, clock) -> None:
    server, handles, runner, _ = _register(tmp_path, store, clock, [_ok(".git"), _ok("main\n"), _ok()])
    context = StubContext()

    created = asyncio.run(handles.create_worktree.fn("sess-1", "REQ00001", "Add Login", context=context))

    assert created["branch_name"] == "feature/req00001-add-login"
    assert created["status"] == "active"
    assert created["merged_at"] is None
    assert created["worktree_path"] == str(tmp_path / ".orchestrator" / "worktrees" / "REQ00001")
    assert context.logger.records[-1][1] == "Created worktree"
    json.dumps(created)

    listed = asyncio.run(handles.list_worktrees.fn("sess-1"))
    assert [item["id"] for item in listed] == [created["id"]]
    assert asyncio.run(handles.list_worktrees.fn("other")) == []


def test_create_worktree_error_is_readable(tmp_path: Path, store: ChromaStore, clock) -> None:
    _, handles, _, _ = _register(tmp_path, store, clock, [_fail("fatal: not a git repository")])

    with pytest.raises(RuntimeError, match="not a git repository"):
        asyncio.run(handles.create_worktree.fn("sess-1", "req-1", "x"))


def test_merge_defaults_to_configured_target(tmp_path: Path, store: ChromaStore, clock) -> None:
    worktree = store.create_worktree(
        session_id="sess-1",
        requirement_id="req-1",
        branch_name="feature/req-1-x",
        worktree_path=tmp_path / "wt",
    )
    _, handles, runner, _ = _register(
        tmp_path,
        store,
        clock,
        [_ok(), _fail("CONFLICT (content): Merge conflict in app.py"), _ok("app.py\n"), _ok()],
    )

    result = asyncio.run(handles.merge_worktree.fn(worktree.id))

    assert runner.commands[0] == ("checkout", "develop")
    assert result["success"] is False
    assert result["target_branch"] == "develop"
    assert result["conflict_files"] == ["app.py"]
    assert runner.commands[-1] == ("merge", "--abort")


def test_cleanup_worktree(tmp_path: Path, store: ChromaStore, clock) -> None:
    worktree = store.create_worktree(
        session_id="sess-1",
        requirement_id="req-1",
        branch_name="feature/req-1-x",
        worktree_path=tmp_path / "wt",
    )
    _, handles, _, _ = _register(tmp_path, store, clock)

    result = asyncio.run(handles.cleanup_worktree.fn(worktree.id))
    assert result == {"worktree_id": worktree.id, "status": "abandoned"}

    with pytest.raises(ValueError, match="not found"):
        asyncio.run(handles.cleanup_worktree.fn("missing"))


def test_worktree_health_with_repair(tmp_path: Path, store: ChromaStore, clock) -> None:
    worktree = store.create_worktree(
        session_id="sess-1",
        requirement_id="req-1",
        branch_name="feature/req-1-x",
        worktree_path=tmp_path / "wt",
    )
    _, handles, _, _ = _register(
        tmp_path,
        store,
        clock,
        [_ok(".git"), _ok(f"worktree {tmp_path}\nHEAD abc\nbranch refs/heads/main\n")],
    )

    payload = asyncio.run(handles.worktree_health.fn("sess-1", repair=True))

    assert payload["healthy"] is False
    assert [issue["type"] for issue in payload["issues"]] == ["stale_record"]
    assert payload["repair"]["fixed"] == ["Marked as abandoned: feature/req-1-x"]
    assert store.get_worktree(worktree.id).status == "abandoned"
    json.dumps(payload)


def test_worktree_tools_unavailable_without_git(tmp_path: Path, store: ChromaStore, clock) -> None:
    _, handles, _, _ = _register(tmp_path, store, clock, with_git=False)

    with pytest.raises(RuntimeError, match="git executable not found"):
        asyncio.run(handles.list_worktrees.fn("sess-1"))
    with pytest.raises(RuntimeError, match="git executable not found"):
        asyncio.run(handles.worktree_health.fn("sess-1"))

    assert handles.list_activities.fn()["activities"] == []


def test_activity_tools(tmp_path: Path, store: ChromaStore, clock) -> None:
    _, handles, _, run_context = _register(tmp_path, store, clock)
    handle = run_context.start_job(
        "job-1",
        requirement_id="req-1",
        requirement_title="Add login",
        phase="implementation",
        agent_type="coder",
    )
    handle.report_message(
        {"type": "assistant", "message": {"content": [{"type": "tool_use", "name": "Read", "input": {"file_path": "/a/b/c.py"}}]}}
    )
    clock.advance(240)

    listing = handles.list_activities.fn()
    assert listing["progress"] == {"completed": 0, "total": 1, "percentage": 0}
    assert listing["activities"][0]["current_tool_call"]["args"] == "b/c.py"
    assert listing["elapsed_seconds"] == 240
    json.dumps(listing)

    status = handles.job_status.fn("job-1")
    assert status["stuck"]["warning"] is True
    assert status["stuck"]["reason"] == "tool_timeout"
    assert status["activity"]["job_id"] == "job-1"

    with pytest.raises(ValueError, match="not found"):
        handles.job_status.fn("ghost")

    handle.complete(True)
    completed = handles.job_status.fn("job-1")
    assert completed["stuck"] is None
    assert completed["activity"]["status"] == "completed"


def test_job_status_leaves_warning_for_the_scheduler(tmp_path: Path, store: ChromaStore, clock) -> None:
    _, handles, _, run_context = _register(tmp_path, store, clock)
    handle = run_context.start_job(
        "job-1",
        requirement_id="req-1",
        requirement_title="Add login",
        phase="implementation",
        agent_type="coder",
    )
    clock.advance(95)

    for _ in range(2):
        assert handles.job_status.fn("job-1")["stuck"]["warning"] is True
    assert handles.job_status.fn("job-1")["activity"]["status"] == "running"

    status = handle.check()
    assert status.warning
    assert not status.stuck
    assert status.seconds_until_timeout == 25
