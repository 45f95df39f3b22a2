"""Data models for persistent tracking."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Literal, Protocol

WorktreeStatus = Literal["active", "merged", "abandoned"]


@dataclass(slots=True)
class Worktree:
    id: str
    session_id: str
    requirement_id: str
    branch_name: str
    worktree_path: Path
    status: WorktreeStatus
    created_at: datetime
    merged_at: datetime | None = None


class WorktreeStore(Protocol):
    """State-store operations the worktree manager relies on.

    Implementations are synchronous and authoritative; callers keep no
    competing copy of a record beyond what they just wrote.
    """

    def create_worktree(
        self,
        *,
        session_id: str,
        requirement_id: str,
        branch_name: str,
        worktree_path: Path,
    ) -> Worktree:
        ...

    def get_worktree(self, worktree_id: str) -> Worktree | None:
        ...

    def update_worktree(
        self,
        worktree_id: str,
        *,
        status: WorktreeStatus | None = None,
        merged_at: datetime | None = None,
    ) -> Worktree:
        ...

    def list_worktrees(self, session_id: str | None = None) -> list[Worktree]:
        ...

    def list_active_worktrees(self, session_id: str) -> list[Worktree]:
        ...


__all__ = ["Worktree", "WorktreeStatus", "WorktreeStore"]
