"""Diagnose and repair drift between git's worktrees and the state store.

Typical causes are crashed runs: git still tracks a checkout whose directory
is gone, a record stays ``active`` after its checkout vanished, or a lock
file survives the process that held it.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Literal

from ..git import GitExecutionResult, GitRunner, GitRunnerError
from ..storage import Worktree, WorktreeStore

logger = logging.getLogger(__name__)

IssueType = Literal["orphaned_git", "stale_record", "locked", "missing_dir", "abandoned"]


@dataclass(slots=True)
class GitWorktreeInfo:
    path: str
    branch: str
    commit: str
    locked: bool = False
    prunable: bool = False


@dataclass(slots=True)
class WorktreeIssue:
    type: IssueType
    description: str
    worktree_path: str | None = None
    branch_name: str | None = None
    worktree_id: str | None = None
    auto_fixable: bool = True


@dataclass(slots=True)
class HealthCheckResult:
    healthy: bool = True
    is_git_repo: bool = False
    git_worktrees: list[GitWorktreeInfo] = field(default_factory=list)
    store_worktrees: list[Worktree] = field(default_factory=list)
    issues: list[WorktreeIssue] = field(default_factory=list)


@dataclass(slots=True)
class RepairResult:
    success: bool = True
    fixed: list[str] = field(default_factory=list)
    failed: list[dict[str, str]] = field(default_factory=list)


def parse_worktree_list(output: str) -> list[GitWorktreeInfo]:
    """Parse ``git worktree list --porcelain`` output."""

    worktrees: list[GitWorktreeInfo] = []
    for block in output.strip().split("\n\n"):
        if not block.strip():
            continue
        path: str | None = None
        branch = "unknown"
        commit = ""
        locked = prunable = False
        for line in block.splitlines():
            if line.startswith("worktree "):
                path = line[len("worktree "):]
            elif line.startswith("HEAD "):
                commit = line[len("HEAD "):]
            elif line.startswith("branch "):
                branch = line[len("branch "):].removeprefix("refs/heads/")
            elif line == "detached":
                branch = "detached"
            elif line == "locked" or line.startswith("locked "):
                locked = True
            elif line == "prunable" or line.startswith("prunable "):
                prunable = True
        if path:
            worktrees.append(
                GitWorktreeInfo(path=path, branch=branch, commit=commit, locked=locked, prunable=prunable)
            )
    return worktrees


def _normalized(path: str | Path) -> Path:
    return Path(path).expanduser().resolve()


class WorktreeHealthChecker:
    """Find and fix inconsistent worktree state for a session."""

    def __init__(
        self,
        project_path: Path,
        store: WorktreeStore,
        *,
        runner: GitRunner | None = None,
        control_dir: str = ".orchestrator",
        abandoned_after: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._project_path = Path(project_path)
        self._store = store
        self._runner = runner or GitRunner()
        self._worktrees_dir = self._project_path / control_dir / "worktrees"
        self._abandoned_after = abandoned_after
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def _git(self, *args: str) -> GitExecutionResult:
        return await self._runner.run(*args, cwd=self._project_path)

    async def _git_best_effort(self, *args: str) -> None:
        result = await self._git(*args)
        if not result.ok:
            logger.debug("Ignoring git failure", extra={"args": list(args), "error": result.error_text})

    async def is_git_repo(self) -> bool:
        try:
            result = await self._git("rev-parse", "--git-dir")
        except GitRunnerError:
            return False
        return result.ok

    async def list_git_worktrees(self) -> list[GitWorktreeInfo]:
        result = await self._git("worktree", "list", "--porcelain")
        if not result.ok:
            return []
        return parse_worktree_list(result.stdout)

    async def check_health(self, session_id: str) -> HealthCheckResult:
        result = HealthCheckResult(is_git_repo=await self.is_git_repo())
        if not result.is_git_repo:
            return result

        result.git_worktrees = await self.list_git_worktrees()
        result.store_worktrees = self._store.list_worktrees(session_id)
        result.issues = self._find_issues(result.git_worktrees, result.store_worktrees)
        result.healthy = not result.issues
        return result

    def _find_issues(
        self,
        git_worktrees: list[GitWorktreeInfo],
        store_worktrees: list[Worktree],
    ) -> list[WorktreeIssue]:
        issues: list[WorktreeIssue] = []
        git_by_path = {_normalized(info.path): info for info in git_worktrees}

        for info in git_worktrees:
            if info.locked:
                issues.append(
                    WorktreeIssue(
                        type="locked",
                        description=f"Worktree is locked: {info.branch}",
                        worktree_path=info.path,
                        branch_name=info.branch,
                    )
                )
            if info.prunable:
                issues.append(
                    WorktreeIssue(
                        type="orphaned_git",
                        description=f"Orphaned worktree (directory missing): {info.branch}",
                        worktree_path=info.path,
                        branch_name=info.branch,
                    )
                )

        cutoff = self._clock() - self._abandoned_after
        for record in store_worktrees:
            if record.status != "active":
                continue
            path = str(record.worktree_path)
            if _normalized(record.worktree_path) not in git_by_path:
                issues.append(
                    WorktreeIssue(
                        type="stale_record",
                        description=f"Record has no corresponding git worktree: {record.branch_name}",
                        worktree_path=path,
                        branch_name=record.branch_name,
                        worktree_id=record.id,
                    )
                )
            elif not record.worktree_path.exists():
                issues.append(
                    WorktreeIssue(
                        type="missing_dir",
                        description=f"Worktree directory missing: {path}",
                        worktree_path=path,
                        branch_name=record.branch_name,
                        worktree_id=record.id,
                    )
                )
            if record.created_at < cutoff:
                issues.append(
                    WorktreeIssue(
                        type="abandoned",
                        description=f"Worktree appears abandoned (older than {self._abandoned_after}): {record.branch_name}",
                        worktree_path=path,
                        branch_name=record.branch_name,
                        worktree_id=record.id,
                    )
                )
        return issues

    async def repair(self, issues: list[WorktreeIssue]) -> RepairResult:
        """Apply the fix for every auto-fixable issue."""

        result = RepairResult()
        for issue in issues:
            if not issue.auto_fixable:
                continue
            try:
                await self._repair_issue(issue, result)
            except (GitRunnerError, OSError, KeyError) as exc:
                result.success = False
                result.failed.append({"issue": issue.description, "error": str(exc)})

        await self._git_best_effort("worktree", "prune")
        return result

    async def _repair_issue(self, issue: WorktreeIssue, result: RepairResult) -> None:
        if issue.type == "orphaned_git":
            (await self._git("worktree", "prune")).raise_for_status()
            result.fixed.append(f"Pruned orphaned worktree: {issue.branch_name}")
        elif issue.type == "locked" and issue.worktree_path:
            await self._git_best_effort("worktree", "unlock", issue.worktree_path)
            await self._git_best_effort("worktree", "remove", "--force", issue.worktree_path)
            result.fixed.append(f"Unlocked and removed: {issue.branch_name}")
        elif issue.type in {"stale_record", "missing_dir"} and issue.worktree_id:
            self._store.update_worktree(issue.worktree_id, status="abandoned")
            result.fixed.append(f"Marked as abandoned: {issue.branch_name}")
        elif issue.type == "abandoned" and issue.worktree_path and issue.worktree_id:
            await self._git_best_effort("worktree", "remove", "--force", issue.worktree_path)
            path = Path(issue.worktree_path)
            if path.exists():
                shutil.rmtree(path)
            self._store.update_worktree(issue.worktree_id, status="abandoned")
            result.fixed.append(f"Cleaned up abandoned worktree: {issue.branch_name}")

    async def full_cleanup(self, session_id: str) -> RepairResult:
        """Remove every secondary worktree, feature branch and active record."""

        result = RepairResult()
        project_root = _normalized(self._project_path)

        for info in await self.list_git_worktrees():
            if _normalized(info.path) == project_root:
                continue
            try:
                if info.locked:
                    await self._git_best_effort("worktree", "unlock", info.path)
                await self._git_best_effort("worktree", "remove", "--force", info.path)
                if Path(info.path).exists():
                    shutil.rmtree(info.path)
                result.fixed.append(f"Removed worktree: {info.branch}")
            except OSError as exc:
                result.success = False
                result.failed.append({"issue": f"Remove {info.branch}", "error": str(exc)})

        await self._git_best_effort("worktree", "prune")

        for record in self._store.list_active_worktrees(session_id):
            self._store.update_worktree(record.id, status="abandoned")

        if self._worktrees_dir.exists():
            for entry in sorted(self._worktrees_dir.iterdir()):
                try:
                    if entry.is_dir():
                        shutil.rmtree(entry)
                    else:
                        entry.unlink()
                    result.fixed.append(f"Removed directory: {entry.name}")
                except OSError as exc:
                    result.success = False
                    result.failed.append({"issue": f"Remove {entry}", "error": str(exc)})

        for branch in await self._feature_branches():
            deleted = await self._git("branch", "-D", branch)
            if deleted.ok:
                result.fixed.append(f"Deleted branch: {branch}")
            else:
                logger.debug("Branch deletion failed", extra={"branch": branch, "error": deleted.error_text})

        return result

    async def _feature_branches(self) -> list[str]:
        result = await self._git("branch", "--list", "feature/*")
        if not result.ok:
            return []
        branches = []
        for line in result.stdout.splitlines():
            # "* " marks the current branch, "+ " one checked out in another worktree.
            name = line.strip().lstrip("*+").strip()
            if name:
                branches.append(name)
        return branches


__all__ = [
    "GitWorktreeInfo",
    "HealthCheckResult",
    "RepairResult",
    "WorktreeHealthChecker",
    "WorktreeIssue",
    "parse_worktree_list",
]
