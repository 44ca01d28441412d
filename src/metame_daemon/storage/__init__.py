"""Storage abstractions for the MetaMe daemon."""

from .models import CONTINUE_SENTINEL, BudgetState, DaemonState, Session, TaskRunRecord
from .state import StateStore

__all__ = [
    "BudgetState",
    "CONTINUE_SENTINEL",
    "DaemonState",
    "Session",
    "StateStore",
    "TaskRunRecord",
]
