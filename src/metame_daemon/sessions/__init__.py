"""Chat session management on top of the engine's own session index."""

from .index import IndexedSession, SessionIndex, format_relative_time
from .manager import AskResult, SessionInUseError, SessionManager

__all__ = [
    "AskResult",
    "IndexedSession",
    "SessionInUseError",
    "SessionIndex",
    "SessionManager",
    "format_relative_time",
]
