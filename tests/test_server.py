from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from forkline import __version__
from forkline.config import ForklineSettings
from forkline.git import FakeGitRunner, GitExecutionResult
from forkline.storage import ChromaStore, ChromaUnavailableError
from forkline import server as server_module


class StubFastMCP:
    def __init__(self, *args, **kwargs):
        self.init_kwargs = kwargs
        self._tools = {}

    def resource(self, *args, **kwargs):
        def decorator(fn):
            name = kwargs.get("name") or (args[0] if args else fn.__name__)
            setattr(self, name, fn)
            return fn

        return decorator

    def tool(self, *args, **kwargs):
        def decorator(fn):
            self._tools[kwargs.get("name", fn.__name__)] = fn
            return fn

        return decorator

    def run(self):  # pragma: no cover - not used in tests
        return None


class UnavailableChromaStore:
    def __init__(self, *_, **__):
        pass

    def ping(self) -> bool:
        raise ChromaUnavailableError("chromadb package is not installed")


@pytest.fixture(autouse=True)
def stub_fastmcp(monkeypatch):
    monkeypatch.setattr(server_module, "FastMCP", StubFastMCP)


def _settings(tmp_path: Path) -> ForklineSettings:
    return ForklineSettings(project_path=tmp_path, chroma_persist_path=tmp_path / "chroma")


def test_create_server_reports_status(tmp_path: Path, store: ChromaStore) -> None:
    runner = FakeGitRunner(
        [GitExecutionResult(args=("git", "--version"), returncode=0, stdout="git version 2.45.0\n", stderr="")]
    )
    store.create_worktree(
        session_id="sess-1",
        requirement_id="req-1",
        branch_name="feature/req-1-x",
        worktree_path=tmp_path / "wt",
    )

    server = server_module.create_server(_settings(tmp_path), git_runner=runner, store=store)

    assert server.init_kwargs["name"] == "Forkline MCP"
    assert server.worktree_manager is not None
    assert server.health_checker is not None
    assert "merge_worktree" in server._tools

    payload = json.loads(server.forkline_status(None))
    assert payload["server_version"] == __version__
    assert payload["git"]["available"] is True
    assert payload["git"]["version"] == "git version 2.45.0"
    assert payload["storage"]["available"] is True
    assert payload["storage"]["worktrees_preview"][0]["branch_name"] == "feature/req-1-x"
    assert payload["jobs"]["progress"] == {"completed": 0, "total": 0, "percentage": 0}
    assert payload["stuck_thresholds"]["idle_timeout"] == 120


def test_create_server_without_git(tmp_path: Path, store: ChromaStore) -> None:
    settings = ForklineSettings(project_path=tmp_path, git_path=str(tmp_path / "missing-git"))

    server = server_module.create_server(settings, store=store)

    assert server.worktree_manager is None
    assert server.git_metadata["available"] is False
    assert "not found" in server.git_metadata["error"]
    with pytest.raises(RuntimeError, match="git executable not found"):
        asyncio.run(server._tools["list_worktrees"]("sess-1"))

    payload = json.loads(server.forkline_status(None))
    assert payload["git"]["available"] is False


def test_create_server_without_store(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(server_module, "ChromaStore", UnavailableChromaStore)

    server = server_module.create_server(_settings(tmp_path), git_runner=FakeGitRunner())

    assert server.store is None
    assert server.worktree_manager is None
    assert server.store_metadata["error"] == "chromadb package is not installed"
    with pytest.raises(RuntimeError, match="state store unavailable"):
        asyncio.run(server._tools["create_worktree"]("sess-1", "req-1", "x"))

    payload = json.loads(server.forkline_status(None))
    assert payload["storage"]["available"] is False
    assert payload["storage"]["worktrees_preview"] == []


def test_status_includes_live_jobs(tmp_path: Path, store: ChromaStore) -> None:
    server = server_module.create_server(_settings(tmp_path), git_runner=FakeGitRunner(), store=store)
    run_context = server.run_context
    run_context.start_job(
        "job-1",
        requirement_id="req-1",
        requirement_title="Add login",
        phase="implementation",
        agent_type="coder",
    )

    payload = json.loads(server.forkline_status(None))

    assert payload["jobs"]["active"] == ["job-1"]
    assert payload["jobs"]["activities"][0]["status"] == "running"
    assert payload["jobs"]["progress"]["total"] == 1


def test_configure_logging_uses_level(monkeypatch) -> None:
    captured = {}

    def fake_basic_config(**kwargs):
        captured.update(kwargs)

    monkeypatch.setattr(server_module.logging, "basicConfig", fake_basic_config)

    server_module.configure_logging("DEBUG")

    assert captured["level"] == server_module.logging.DEBUG
    assert captured["format"] == "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
