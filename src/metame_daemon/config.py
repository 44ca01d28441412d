"""Configuration management for the MetaMe daemon."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DaemonSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    home: Path = Field(default=Path("~/.metame"), validation_alias="METAME_HOME")
    engine_path: str | None = Field(default=None, validation_alias="METAME_ENGINE_PATH")
    engine_projects_dir: Path = Field(
        default=Path("~/.claude/projects"), validation_alias="METAME_ENGINE_PROJECTS_DIR"
    )
    profile_path: Path = Field(
        default=Path("~/.claude_profile.yaml"), validation_alias="METAME_PROFILE_PATH"
    )
    log_level: str = Field(default="INFO", validation_alias="METAME_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "METAME_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("home", "engine_projects_dir", "profile_path", mode="after")
    @classmethod
    def _expand_path(cls, value: Path) -> Path:
        return value.expanduser()

    @property
    def config_file(self) -> Path:
        return self.home / "daemon.yaml"

    @property
    def state_file(self) -> Path:
        return self.home / "daemon_state.json"

    @property
    def pid_file(self) -> Path:
        return self.home / "daemon.pid"

    @property
    def log_file(self) -> Path:
        return self.home / "daemon.log"


@lru_cache(maxsize=1)
def get_settings() -> DaemonSettings:
    """Return cached settings instance."""

    settings = DaemonSettings()
    settings.home = settings.home.resolve()
    return settings


__all__ = ["DaemonSettings", "get_settings"]
