"""Chat backends."""

from .base import AdapterAuthError, AdapterError, BotAdapter, Button, ButtonRows, MessageHandler, split_message

__all__ = [
    "AdapterAuthError",
    "AdapterError",
    "BotAdapter",
    "Button",
    "ButtonRows",
    "MessageHandler",
    "split_message",
]
