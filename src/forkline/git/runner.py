"""Async runner for the git executable."""

from __future__ import annotations

import asyncio
import json
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .utils import sanitize_environment


class GitRunnerError(RuntimeError):
    """Base class for git invocation errors."""


class GitNotFoundError(GitRunnerError):
    """Raised when the git executable cannot be located."""


class GitCommandError(GitRunnerError):
    """Raised when a git command that must succeed exits non-zero."""

    def __init__(self, result: "GitExecutionResult") -> None:
        super().__init__(result.error_text)
        self.result = result


@dataclass(slots=True)
class GitExecutionResult:
    """Holds the outcome of a git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def error_text(self) -> str:
        return self.stderr.strip() or f"git {' '.join(self.args[1:])} exited with code {self.returncode}"

    def raise_for_status(self) -> "GitExecutionResult":
        if not self.ok:
            raise GitCommandError(self)
        return self


class GitRunner:
    """Execute git commands asynchronously.

    A non-zero exit is returned as a result rather than raised: merge
    conflicts and "branch already exists" are outcomes callers handle.
    """

    def __init__(self, executable: Path | None = None) -> None:
        self._executable_path = self._resolve_executable(executable)

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise GitNotFoundError(f"git executable not found at {candidate}")

        binary = shutil.which("git")
        if binary is None:
            raise GitNotFoundError("git executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def version(self) -> GitExecutionResult:
        return await self.run("--version", cwd=Path.cwd())

    async def run(self, *args: str, cwd: Path) -> GitExecutionResult:
        cmd = [str(self._executable_path), *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment(),
            )
        except OSError as exc:
            raise GitRunnerError(f"Failed to start git in {cwd}: {exc}") from exc
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return GitExecutionResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


class FakeGitRunner(GitRunner):
    """Test double that replays scripted git results in order."""

    def __init__(self, responses: Iterable[GitExecutionResult] | None = None) -> None:  # type: ignore[override]
        self._responses = list(responses or [])
        self._invocations: list[tuple[Path, tuple[str, ...]]] = []
        self._executable_path = Path("/tmp/fake-git")

    async def run(self, *args: str, cwd: Path) -> GitExecutionResult:  # type: ignore[override]
        self._invocations.append((Path(cwd), tuple(args)))
        if self._responses:
            return self._responses.pop(0)
        return GitExecutionResult(args=("git", *args), returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[Path, tuple[str, ...]]]:
        return self._invocations

    @property
    def commands(self) -> list[tuple[str, ...]]:
        return [args for _, args in self._invocations]


def serialize_result(result: GitExecutionResult) -> str:
    """Serialize a command result for logs and diagnostics."""

    return json.dumps(
        {
            "args": list(result.args),
            "returncode": result.returncode,
            "stdout": result.stdout,
            "stderr": result.stderr,
        }
    )
