from __future__ import annotations

import shutil
import subprocess
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from forkline.git.utils import sanitize_environment
from forkline.storage import ChromaStore


@dataclass
class _Record:
    document: str
    metadata: dict[str, Any]
    id: str


class StubCollection:
    def __init__(self) -> None:
        self.records: list[_Record] = []

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, record_id in zip(documents, metadatas, ids):
            self.records.append(_Record(document=document, metadata=dict(metadata), id=record_id))

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
        filtered = self.records
        if ids is not None:
            filtered = [record for record in filtered if record.id in set(ids)]
        if where:
            for key, value in where.items():
                filtered = [record for record in filtered if record.metadata.get(key) == value]
        if limit is not None:
            filtered = filtered[:limit]
        return {
            "ids": [record.id for record in filtered],
            "documents": [record.document for record in filtered],
            "metadatas": [record.metadata for record in filtered],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def stub_client() -> StubClient:
    return StubClient()


@pytest.fixture
def store(tmp_path: Path, stub_client: StubClient, clock: FakeClock) -> ChromaStore:
    return ChromaStore(tmp_path / "chroma", client_factory=lambda: stub_client, clock=clock)


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git executable not available")


def run_git(cwd: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        capture_output=True,
        text=True,
        env=sanitize_environment(),
        check=False,
    )


def commit_file(cwd: Path, name: str, content: str, message: str) -> None:
    (cwd / name).write_text(content, encoding="utf-8")
    assert run_git(cwd, "add", name).returncode == 0
    assert run_git(cwd, "commit", "-m", message).returncode == 0


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """A git repository on ``main`` with one commit of ``shared.txt``."""

    project = tmp_path / "project"
    project.mkdir()
    assert run_git(project, "init").returncode == 0
    run_git(project, "symbolic-ref", "HEAD", "refs/heads/main")
    run_git(project, "config", "user.email", "dev@example.com")
    run_git(project, "config", "user.name", "Dev")
    run_git(project, "config", "commit.gpgsign", "false")
    commit_file(project, "shared.txt", "base\n", "initial")
    return project
