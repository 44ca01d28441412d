"""Heartbeat task configuration models and loader exports."""

from .loader import ConfigLoadError, ConfigLoader, ConfigReloadFailed, load_config
from .models import (
    BudgetConfig,
    DaemonConfig,
    DaemonOptions,
    FeishuConfig,
    HeartbeatTask,
    TelegramConfig,
    WorkflowStep,
)

__all__ = [
    "BudgetConfig",
    "ConfigLoadError",
    "ConfigLoader",
    "ConfigReloadFailed",
    "DaemonConfig",
    "DaemonOptions",
    "FeishuConfig",
    "HeartbeatTask",
    "TelegramConfig",
    "WorkflowStep",
    "load_config",
]
