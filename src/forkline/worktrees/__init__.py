"""Per-requirement git worktree isolation."""

from .health import (
    GitWorktreeInfo,
    HealthCheckResult,
    RepairResult,
    WorktreeHealthChecker,
    WorktreeIssue,
)
from .manager import (
    MergeResult,
    NotAGitRepositoryError,
    WorktreeCreationError,
    WorktreeError,
    WorktreeManager,
    WorktreeNotFoundError,
    branch_name_for,
    slugify,
)

__all__ = [
    "GitWorktreeInfo",
    "HealthCheckResult",
    "MergeResult",
    "NotAGitRepositoryError",
    "RepairResult",
    "WorktreeCreationError",
    "WorktreeError",
    "WorktreeHealthChecker",
    "WorktreeIssue",
    "WorktreeManager",
    "WorktreeNotFoundError",
    "branch_name_for",
    "slugify",
]
