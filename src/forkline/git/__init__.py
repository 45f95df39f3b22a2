"""Git invocation utilities."""

from .runner import (
    FakeGitRunner,
    GitCommandError,
    GitExecutionResult,
    GitNotFoundError,
    GitRunner,
    GitRunnerError,
    serialize_result,
)

__all__ = [
    "FakeGitRunner",
    "GitCommandError",
    "GitExecutionResult",
    "GitNotFoundError",
    "GitRunner",
    "GitRunnerError",
    "serialize_result",
]
