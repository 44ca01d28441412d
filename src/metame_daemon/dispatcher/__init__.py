"""Chat command parsing and dispatch."""

from .commands import Command, parse_command
from .dispatcher import HELP_TEXT, CommandDispatcher, CooldownTracker

__all__ = ["Command", "CommandDispatcher", "CooldownTracker", "HELP_TEXT", "parse_command"]
