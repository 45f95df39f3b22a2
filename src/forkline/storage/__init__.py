"""Storage abstractions for Forkline."""

from .chroma import ChromaEvent, ChromaStore, ChromaUnavailableError
from .models import Worktree, WorktreeStatus, WorktreeStore

__all__ = [
    "ChromaEvent",
    "ChromaStore",
    "ChromaUnavailableError",
    "Worktree",
    "WorktreeStatus",
    "WorktreeStore",
]
