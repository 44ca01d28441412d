"""Heartbeat scheduling and task execution."""

from .executor import (
    BUDGET_EXCEEDED,
    PreconditionNotMet,
    StepFailedError,
    TaskExecutor,
    TaskResult,
    format_notification,
)
from .intervals import DEFAULT_INTERVAL_SECONDS, parse_interval
from .scheduler import TaskScheduler
from .watcher import ConfigWatcher

__all__ = [
    "BUDGET_EXCEEDED",
    "ConfigWatcher",
    "DEFAULT_INTERVAL_SECONDS",
    "PreconditionNotMet",
    "StepFailedError",
    "TaskExecutor",
    "TaskResult",
    "TaskScheduler",
    "format_notification",
    "parse_interval",
]
