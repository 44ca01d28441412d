"""Chat backend contract shared by the Telegram and Feishu adapters."""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Sequence

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, str], Awaitable[None]]


class AdapterError(RuntimeError):
    """Raised when a chat backend rejects a request."""


class AdapterAuthError(AdapterError):
    """Raised when a chat backend cannot authenticate with its credentials."""


@dataclass(slots=True, frozen=True)
class Button:
    text: str
    command: str


ButtonRows = Sequence[Sequence[Button]]


def split_message(text: str, limit: int) -> list[str]:
    """Split text into chunks no longer than ``limit``.

    A chunk ends at the last newline inside the window when that newline lies
    in the second half of the window; otherwise the text is cut hard.
    """

    if len(text) <= limit:
        return [text]
    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= limit:
            chunks.append(remaining)
            break
        split_at = remaining.rfind("\n", 0, limit + 1)
        if split_at < limit * 0.5:
            split_at = limit
        chunks.append(remaining[:split_at])
        remaining = remaining[split_at:]
        if remaining.startswith("\n"):
            remaining = remaining[1:]
    return chunks


class BotAdapter(abc.ABC):
    """One chat backend.

    Inbound messages and button presses are delivered to the same handler as
    ``(chat_id, text)``; each delivery runs as its own asyncio task so that a
    slow conversation in one chat never blocks another.
    """

    name: str = "bot"
    chunk_limit: int = 4096

    def __init__(self, allowed_chat_ids: Iterable[str] = ()) -> None:
        self.allowed_chat_ids: list[str] = [str(chat_id) for chat_id in allowed_chat_ids]
        self._handlers: set[asyncio.Task] = set()

    def is_allowed(self, chat_id: str) -> bool:
        return not self.allowed_chat_ids or str(chat_id) in self.allowed_chat_ids

    def _dispatch(self, handler: MessageHandler, chat_id: str, text: str) -> asyncio.Task | None:
        if not self.is_allowed(chat_id):
            logger.warning("Rejected message from chat", extra={"bot": self.name, "chat_id": chat_id})
            return None
        task = asyncio.create_task(self._deliver(handler, str(chat_id), text))
        self._handlers.add(task)
        task.add_done_callback(self._handlers.discard)
        return task

    async def _deliver(self, handler: MessageHandler, chat_id: str, text: str) -> None:
        try:
            await handler(chat_id, text)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Message handler failed", extra={"bot": self.name, "chat_id": chat_id})

    async def wait_handlers(self) -> None:
        if self._handlers:
            await asyncio.gather(*list(self._handlers), return_exceptions=True)

    @abc.abstractmethod
    async def get_me(self) -> dict[str, Any]:
        """Verify credentials; raises :class:`AdapterAuthError` on failure."""

    @abc.abstractmethod
    async def start_receiving(self, handler: MessageHandler) -> None:
        ...

    @abc.abstractmethod
    async def stop(self) -> None:
        ...

    @abc.abstractmethod
    async def send_message(self, chat_id: str, text: str) -> None:
        ...

    @abc.abstractmethod
    async def send_markdown(self, chat_id: str, text: str) -> None:
        ...

    @abc.abstractmethod
    async def send_buttons(self, chat_id: str, title: str, rows: ButtonRows) -> None:
        ...

    @abc.abstractmethod
    async def send_typing(self, chat_id: str) -> None:
        ...


__all__ = [
    "AdapterAuthError",
    "AdapterError",
    "BotAdapter",
    "Button",
    "ButtonRows",
    "MessageHandler",
    "split_message",
]
