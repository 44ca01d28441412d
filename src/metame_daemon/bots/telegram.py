"""Telegram Bot API adapter using httpx long polling."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable

import httpx

from .base import AdapterAuthError, AdapterError, BotAdapter, ButtonRows, MessageHandler, split_message

logger = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"
POLL_TIMEOUT = 30
REQUEST_TIMEOUT = 10.0
POLL_ERROR_BACKOFF = 5.0
VOICE_HINT = "🎤 Voice messages are not supported yet. Use your keyboard's dictation to send text."


class TelegramApiError(AdapterError):
    """Raised when the Bot API answers with ``ok: false``."""


class TelegramAdapter(BotAdapter):
    name = "telegram"
    chunk_limit = 4096

    def __init__(
        self,
        token: str | None,
        allowed_chat_ids: Iterable[str] = (),
        *,
        client: httpx.AsyncClient | None = None,
        poll_timeout: int = POLL_TIMEOUT,
        backoff: float = POLL_ERROR_BACKOFF,
    ) -> None:
        super().__init__(allowed_chat_ids)
        if not token:
            raise AdapterAuthError("Telegram bot_token is required")
        self._token = token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self._poll_timeout = poll_timeout
        self._backoff = backoff
        self._poll_task: asyncio.Task | None = None
        self._offset = 0

    def _url(self, method: str) -> str:
        return f"{API_BASE}/bot{self._token}/{method}"

    async def _call(self, method: str, params: dict[str, Any] | None = None, *, timeout: float = REQUEST_TIMEOUT) -> Any:
        response = await self._client.post(self._url(method), json=params or {}, timeout=timeout)
        try:
            payload = response.json()
        except ValueError as exc:
            raise TelegramApiError(f"Failed to parse Telegram response: {exc}") from exc
        if not isinstance(payload, dict):
            raise TelegramApiError("Unexpected Telegram response")
        if not payload.get("ok"):
            raise TelegramApiError(f"Telegram API error: {payload.get('description') or 'unknown'}")
        return payload.get("result")

    async def get_me(self) -> dict[str, Any]:
        try:
            return await self._call("getMe")
        except (httpx.HTTPError, AdapterError) as exc:
            raise AdapterAuthError(f"Telegram getMe failed: {exc}") from exc

    async def get_updates(self) -> list[dict[str, Any]]:
        params = {
            "offset": self._offset,
            "timeout": self._poll_timeout,
            "allowed_updates": ["message", "callback_query"],
        }
        try:
            result = await self._call("getUpdates", params, timeout=self._poll_timeout + 5)
        except httpx.TimeoutException:
            return []
        return result or []

    async def start_receiving(self, handler: MessageHandler) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_task = asyncio.create_task(self._poll_loop(handler))
        logger.info("Telegram polling started", extra={"allowed_chats": len(self.allowed_chat_ids)})

    async def _poll_loop(self, handler: MessageHandler) -> None:
        while True:
            try:
                updates = await self.get_updates()
            except asyncio.CancelledError:
                raise
            except (httpx.HTTPError, AdapterError) as exc:
                logger.error("Telegram poll error", extra={"error": str(exc)})
                await asyncio.sleep(self._backoff)
                continue
            for update in updates:
                self._offset = max(self._offset, int(update.get("update_id", 0)) + 1)
                try:
                    await self.handle_update(update, handler)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Failed to handle Telegram update", extra={"update_id": update.get("update_id")})

    async def handle_update(self, update: dict[str, Any], handler: MessageHandler) -> None:
        callback = update.get("callback_query")
        if callback:
            try:
                await self._call("answerCallbackQuery", {"callback_query_id": callback.get("id")})
            except (httpx.HTTPError, AdapterError) as exc:
                logger.debug("answerCallbackQuery failed", extra={"error": str(exc)})
            chat_id = (callback.get("message") or {}).get("chat", {}).get("id")
            data = callback.get("data")
            if chat_id is not None and data:
                self._dispatch(handler, str(chat_id), data)
            return

        message = update.get("message")
        if not message:
            return
        chat_id = str(message.get("chat", {}).get("id"))
        text = message.get("text")
        if text:
            self._dispatch(handler, chat_id, text)
        elif message.get("voice") and self.is_allowed(chat_id):
            await self.send_message(chat_id, VOICE_HINT)

    async def stop(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        if self._owns_client:
            await self._client.aclose()

    async def send_message(self, chat_id: str, text: str) -> None:
        for chunk in split_message(text, self.chunk_limit):
            await self._call("sendMessage", {"chat_id": chat_id, "text": chunk})

    async def send_markdown(self, chat_id: str, text: str) -> None:
        for chunk in split_message(text, self.chunk_limit):
            try:
                await self._call("sendMessage", {"chat_id": chat_id, "text": chunk, "parse_mode": "Markdown"})
            except TelegramApiError as exc:
                logger.debug("Markdown rejected; sending plain text", extra={"error": str(exc)})
                await self._call("sendMessage", {"chat_id": chat_id, "text": chunk})

    async def send_buttons(self, chat_id: str, title: str, rows: ButtonRows) -> None:
        keyboard = [[{"text": button.text, "callback_data": button.command} for button in row] for row in rows]
        await self._call(
            "sendMessage",
            {"chat_id": chat_id, "text": title, "reply_markup": {"inline_keyboard": keyboard}},
        )

    async def send_typing(self, chat_id: str) -> None:
        await self._call("sendChatAction", {"chat_id": chat_id, "action": "typing"})


__all__ = ["TelegramAdapter", "TelegramApiError"]
