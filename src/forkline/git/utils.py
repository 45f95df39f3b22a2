"""Utility helpers for the git runner."""

from __future__ import annotations

import os
from typing import Mapping

# Repository-selection variables would redirect every command away from the
# explicit working directory.
_SANITIZED_VARS = {
    "GIT_DIR",
    "GIT_WORK_TREE",
    "GIT_INDEX_FILE",
    "GIT_COMMON_DIR",
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for git subprocesses."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    # Never block on an interactive prompt (credentials, editor).
    env.setdefault("GIT_TERMINAL_PROMPT", "0")
    env.setdefault("GIT_EDITOR", "true")
    if additional:
        env.update(additional)
    return env
