"""Models for the daemon.yaml configuration document."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class WorkflowStep(BaseModel):
    """A single step of a workflow task, executed inside the shared engine session."""

    model_config = ConfigDict(extra="ignore")

    skill: str | None = Field(default=None, description="Engine skill invoked as '/<skill>'.")
    prompt: str = Field(default="", description="Prompt text sent after the skill invocation.")
    optional: bool = Field(
        default=False,
        description="Whether the workflow continues when this step fails.",
    )
    timeout: int | None = Field(default=None, description="Per-step timeout in seconds.")

    @property
    def label(self) -> str:
        return self.skill or "prompt"

    def render(self) -> str:
        prefix = f"/{self.skill} " if self.skill else ""
        return prefix + self.prompt


class HeartbeatTask(BaseModel):
    """Configuration describing one scheduled heartbeat task."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str = Field(..., description="Unique task name; join key with run history.")
    type: Literal["prompt", "script", "workflow"] = Field(default="prompt")
    interval: str = Field(default="1h", description="Duration string such as 30m or 1d.")
    prompt: str | None = None
    command: str | None = None
    steps: list[WorkflowStep] = Field(default_factory=list)
    precondition: str | None = Field(
        default=None,
        description="Shell predicate; empty output or non-zero exit skips the run.",
    )
    model: str | None = None
    allowed_tools: list[str] = Field(default_factory=list, alias="allowedTools")
    notify: bool = False
    cwd: str | None = None
    timeout: int | None = Field(default=None, description="Timeout in seconds.")

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Task name must not be empty")
        return normalized

    @field_validator("interval", mode="before")
    @classmethod
    def _coerce_interval(cls, value: Any) -> str:
        if value is None:
            return "1h"
        return str(value).strip()

    @field_validator("allowed_tools", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise TypeError("allowedTools must be a string or a sequence of strings")

    @model_validator(mode="after")
    def _check_payload(self) -> "HeartbeatTask":
        if self.type == "script" and not self.command:
            raise ValueError(f"Script task '{self.name}' requires a command")
        if self.type == "prompt" and not self.prompt:
            raise ValueError(f"Prompt task '{self.name}' requires a prompt")
        return self


class DaemonOptions(BaseModel):
    model_config = ConfigDict(extra="ignore")

    heartbeat_check_interval: int = Field(default=60, ge=1)
    log_max_size: int = Field(default=1_048_576, ge=1024)
    session_allowed_tools: list[str] = Field(default_factory=list)
    cooldown_seconds: float = Field(default=10.0, ge=0)
    ask_timeout: int = Field(default=300, ge=1)


class BudgetConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    daily_limit: int = Field(default=50_000, ge=1)
    warning_threshold: float = Field(default=0.8, gt=0, le=1)


class HeartbeatConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tasks: list[HeartbeatTask] = Field(default_factory=list)

    @field_validator("tasks", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any):  # type: ignore[override]
        return value or []

    @model_validator(mode="after")
    def _unique_names(self) -> "HeartbeatConfig":
        seen: set[str] = set()
        for task in self.tasks:
            if task.name in seen:
                raise ValueError(f"Duplicate heartbeat task name '{task.name}'")
            seen.add(task.name)
        return self


class ChatBackendConfig(BaseModel):
    """Credential and allow-list block shared by the chat backends."""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = False
    allowed_chat_ids: list[str] = Field(default_factory=list)

    @field_validator("allowed_chat_ids", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, (str, int)):
            value = [value]
        return [str(item) for item in value]


class TelegramConfig(ChatBackendConfig):
    bot_token: str | None = None


class FeishuConfig(ChatBackendConfig):
    app_id: str | None = None
    app_secret: str | None = None


class DaemonConfig(BaseModel):
    """Root of the daemon.yaml document."""

    model_config = ConfigDict(extra="ignore")

    daemon: DaemonOptions = Field(default_factory=DaemonOptions)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    feishu: FeishuConfig = Field(default_factory=FeishuConfig)

    @field_validator("daemon", "budget", "heartbeat", "telegram", "feishu", mode="before")
    @classmethod
    def _none_is_default(cls, value: Any):  # type: ignore[override]
        return {} if value is None else value

    @property
    def tasks(self) -> list[HeartbeatTask]:
        return self.heartbeat.tasks

    def find_task(self, name: str) -> HeartbeatTask | None:
        for task in self.heartbeat.tasks:
            if task.name == name:
                return task
        return None


__all__ = [
    "BudgetConfig",
    "ChatBackendConfig",
    "DaemonConfig",
    "DaemonOptions",
    "FeishuConfig",
    "HeartbeatConfig",
    "HeartbeatTask",
    "TelegramConfig",
    "WorkflowStep",
]
