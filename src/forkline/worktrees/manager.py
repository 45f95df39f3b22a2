"""Isolated git worktrees per requirement, and their reintegration.

Each requirement gets its own branch and checkout under
``<project>/<control_dir>/worktrees/<requirement_id>``. Those directories are
disjoint, which is what makes concurrent jobs safe; no locking happens here.
``merge`` is the exception: it checks out the shared target branch in the
project root, so callers must run at most one merge per target at a time.
"""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from ..git import GitExecutionResult, GitRunner, GitRunnerError, serialize_result
from ..storage import Worktree, WorktreeStore

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "feature/"
SLUG_MAX_LENGTH = 30
DEFAULT_SLUG = "work"


class WorktreeError(RuntimeError):
    """Base class for worktree management errors."""


class NotAGitRepositoryError(WorktreeError):
    """Raised when the project directory is not under git version control."""


class WorktreeCreationError(WorktreeError):
    """Raised when neither a new nor an existing branch could be checked out."""

    def __init__(self, message: str, *, cause: str) -> None:
        super().__init__(message)
        self.cause = cause


class WorktreeNotFoundError(WorktreeError):
    """Raised when a worktree id is unknown to the state store."""


@dataclass(slots=True)
class MergeResult:
    """Outcome of reintegrating a worktree branch."""

    success: bool
    conflict_files: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflict_files)


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    # Cutting at the cap can expose a trailing hyphen again.
    slug = slug[:SLUG_MAX_LENGTH].rstrip("-")
    return slug or DEFAULT_SLUG


def branch_name_for(requirement_id: str, slug: str) -> str:
    return f"{BRANCH_PREFIX}{requirement_id[:8].lower()}-{slugify(slug)}"


class WorktreeManager:
    """Create, merge and remove per-requirement git worktrees."""

    def __init__(
        self,
        project_path: Path,
        store: WorktreeStore,
        *,
        runner: GitRunner | None = None,
        control_dir: str = ".orchestrator",
        default_target_branch: str = "main",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._project_path = Path(project_path)
        self._store = store
        self._runner = runner or GitRunner()
        self._worktrees_dir = self._project_path / control_dir / "worktrees"
        self._default_target_branch = default_target_branch
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def project_path(self) -> Path:
        return self._project_path

    @property
    def worktrees_dir(self) -> Path:
        return self._worktrees_dir

    async def _git(self, *args: str) -> GitExecutionResult:
        result = await self._runner.run(*args, cwd=self._project_path)
        if not result.ok:
            logger.debug("git command failed", extra={"result": serialize_result(result)})
        return result

    async def is_git_repo(self) -> bool:
        try:
            result = await self._git("rev-parse", "--git-dir")
        except GitRunnerError:
            return False
        return result.ok

    async def get_current_branch(self) -> str:
        result = (await self._git("rev-parse", "--abbrev-ref", "HEAD")).raise_for_status()
        return result.stdout.strip()

    async def create(self, session_id: str, requirement_id: str, slug: str) -> Worktree:
        """Check out a dedicated branch for ``requirement_id`` and record it.

        A branch left behind by an earlier attempt is reattached rather than
        recreated.
        """

        if not await self.is_git_repo():
            raise NotAGitRepositoryError(
                f"{self._project_path} is not a git repository. Initialize git first with: git init"
            )

        branch_name = branch_name_for(requirement_id, slug)
        worktree_path = self._worktrees_dir / requirement_id
        self._worktrees_dir.mkdir(parents=True, exist_ok=True)

        base_branch = await self.get_current_branch()
        created = await self._git("worktree", "add", "-b", branch_name, str(worktree_path), base_branch)
        if not created.ok:
            logger.info(
                "New branch could not be created; attaching existing branch",
                extra={"branch": branch_name, "error": created.error_text},
            )
            attached = await self._git("worktree", "add", str(worktree_path), branch_name)
            if not attached.ok:
                raise WorktreeCreationError(
                    f"Failed to create worktree for {branch_name}: {created.error_text}",
                    cause=created.error_text,
                )

        worktree = self._store.create_worktree(
            session_id=session_id,
            requirement_id=requirement_id,
            branch_name=branch_name,
            worktree_path=worktree_path,
        )
        logger.info(
            "Created worktree",
            extra={"worktree_id": worktree.id, "branch": branch_name, "path": str(worktree_path)},
        )
        return worktree

    async def list(self, session_id: str) -> list[Worktree]:
        return self._store.list_worktrees(session_id)

    async def merge(self, worktree_id: str, target_branch: str | None = None) -> MergeResult:
        """Merge a worktree's branch into ``target_branch`` with ``--no-ff``.

        A conflicting merge is always aborted before returning, so the target
        branch is left clean and the conflicting paths are reported.
        """

        worktree = self._store.get_worktree(worktree_id)
        if worktree is None:
            return MergeResult(success=False, error="Worktree not found")

        target = target_branch or self._default_target_branch
        checkout = await self._git("checkout", target)
        if not checkout.ok:
            return MergeResult(success=False, error=f"Failed to checkout {target}: {checkout.error_text}")

        merged = await self._git(
            "merge",
            worktree.branch_name,
            "--no-ff",
            "-m",
            f"Merge {worktree.branch_name} into {target}",
        )
        if not merged.ok:
            conflict_files = await self._conflict_files()
            if conflict_files:
                aborted = await self._git("merge", "--abort")
                if not aborted.ok:
                    logger.error(
                        "Could not abort conflicting merge",
                        extra={"worktree_id": worktree_id, "target": target, "error": aborted.error_text},
                    )
                    aborted.raise_for_status()
                logger.warning(
                    "Merge conflict",
                    extra={"worktree_id": worktree_id, "target": target, "files": conflict_files},
                )
                return MergeResult(
                    success=False,
                    conflict_files=conflict_files,
                    error=f"Merge conflict in files: {', '.join(conflict_files)}",
                )
            return MergeResult(success=False, error=f"Merge failed: {merged.error_text}")

        self._store.update_worktree(worktree_id, status="merged", merged_at=self._clock())
        try:
            await self.cleanup(worktree_id)
        except (GitRunnerError, WorktreeError) as exc:
            logger.warning(
                "Cleanup after merge failed",
                extra={"worktree_id": worktree_id, "error": str(exc)},
            )
        logger.info("Merged worktree", extra={"worktree_id": worktree_id, "target": target})
        return MergeResult(success=True)

    async def _conflict_files(self) -> list[str]:
        result = await self._git("diff", "--name-only", "--diff-filter=U")
        if not result.ok:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def cleanup(self, worktree_id: str) -> None:
        """Remove the checkout; records still active become ``abandoned``."""

        worktree = self._store.get_worktree(worktree_id)
        if worktree is None:
            raise WorktreeNotFoundError(f"Worktree '{worktree_id}' not found")

        removed = await self._git("worktree", "remove", str(worktree.worktree_path), "--force")
        if not removed.ok and worktree.worktree_path.exists():
            try:
                shutil.rmtree(worktree.worktree_path)
            except OSError as exc:
                logger.warning(
                    "Could not remove worktree directory",
                    extra={"worktree_id": worktree_id, "path": str(worktree.worktree_path), "error": str(exc)},
                )

        pruned = await self._git("worktree", "prune")
        if not pruned.ok:
            logger.debug("git worktree prune failed", extra={"error": pruned.error_text})

        if worktree.status == "active":
            self._store.update_worktree(worktree_id, status="abandoned")

    def get_path(self, worktree_id: str) -> Path | None:
        worktree = self._store.get_worktree(worktree_id)
        return worktree.worktree_path if worktree else None

    def get_worktree_info(self, worktree_id: str) -> Worktree | None:
        return self._store.get_worktree(worktree_id)


__all__ = [
    "MergeResult",
    "NotAGitRepositoryError",
    "WorktreeCreationError",
    "WorktreeError",
    "WorktreeManager",
    "WorktreeNotFoundError",
    "branch_name_for",
    "slugify",
]
