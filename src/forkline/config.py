"""Configuration management for Forkline."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ForklineSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    project_path: Path = Field(default=Path("."), validation_alias="FORKLINE_PROJECT_PATH")
    control_dir: str = Field(default=".orchestrator", validation_alias="FORKLINE_CONTROL_DIR")
    target_branch: str = Field(default="main", validation_alias="FORKLINE_TARGET_BRANCH")
    git_path: str | None = Field(default=None, validation_alias="GIT_PATH")
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    log_level: str = Field(default="INFO", validation_alias="FORKLINE_LOG_LEVEL")

    idle_timeout_seconds: float = Field(default=120.0, validation_alias="FORKLINE_IDLE_TIMEOUT")
    thinking_timeout_seconds: float = Field(
        default=180.0, validation_alias="FORKLINE_THINKING_TIMEOUT"
    )
    tool_timeout_seconds: float = Field(default=300.0, validation_alias="FORKLINE_TOOL_TIMEOUT")
    warning_threshold: float = Field(default=0.75, validation_alias="FORKLINE_WARNING_THRESHOLD")
    max_retries: int = Field(default=3, validation_alias="FORKLINE_MAX_RETRIES")
    check_interval_seconds: float = Field(default=1.0, validation_alias="FORKLINE_CHECK_INTERVAL")
    completion_grace_seconds: float = Field(
        default=5.0, validation_alias="FORKLINE_COMPLETION_GRACE"
    )
    abandoned_after_hours: float = Field(
        default=24.0, validation_alias="FORKLINE_ABANDONED_AFTER_HOURS"
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "FORKLINE_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("control_dir", "target_branch")
    @classmethod
    def _require_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("control_dir and target_branch must not be empty")
        return normalized

    @field_validator("control_dir")
    @classmethod
    def _relative_control_dir(cls, value: str) -> str:
        if Path(value).is_absolute():
            raise ValueError("FORKLINE_CONTROL_DIR must be relative to the project path")
        return value

    @field_validator(
        "idle_timeout_seconds",
        "thinking_timeout_seconds",
        "tool_timeout_seconds",
        "check_interval_seconds",
        "abandoned_after_hours",
    )
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts and intervals must be > 0")
        return value

    @field_validator("warning_threshold")
    @classmethod
    def _validate_warning_threshold(cls, value: float) -> float:
        if not 0 < value < 1:
            raise ValueError("FORKLINE_WARNING_THRESHOLD must be between 0 and 1 (exclusive)")
        return value

    @field_validator("max_retries", "completion_grace_seconds")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("FORKLINE_MAX_RETRIES and FORKLINE_COMPLETION_GRACE must be >= 0")
        return value


@lru_cache(maxsize=1)
def get_settings() -> ForklineSettings:
    """Return cached settings instance."""

    settings = ForklineSettings()
    settings.project_path = settings.project_path.expanduser().resolve()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    return settings


__all__ = ["ForklineSettings", "get_settings"]
