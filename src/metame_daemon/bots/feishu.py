"""Feishu (Lark) adapter built on lark-oapi.

Sends go through the REST client in worker threads. Receiving uses the SDK's
websocket long connection, which runs its own event loop in a background
thread; events are handed back to the daemon loop thread-safely.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import threading
import time
from typing import Any, Callable, Iterable

import lark_oapi as lark
from lark_oapi.api.im.v1 import CreateMessageRequest, CreateMessageRequestBody, P2ImMessageReceiveV1
from lark_oapi.event.callback.model.p2_card_action_trigger import (
    P2CardActionTrigger,
    P2CardActionTriggerResponse,
)
from lark_oapi.ws import client as lark_ws_client

from .base import AdapterAuthError, AdapterError, BotAdapter, ButtonRows, MessageHandler, split_message

logger = logging.getLogger(__name__)

DEDUP_TTL_SECONDS = 60.0
_MENTION_RE = re.compile(r"@_user_\d+\s*")
_HEADER_RE = re.compile(r"^(#{1,3})\s+(.+)$", re.MULTILINE)
_RULE_RE = re.compile(r"^---+$", re.MULTILINE)


class FeishuApiError(AdapterError):
    """Raised when the Feishu open platform rejects a request."""


class SeenMessages:
    """Remembers message ids for a short window; Feishu redelivers on slow acks."""

    def __init__(self, ttl: float = DEDUP_TTL_SECONDS, clock: Callable[[], float] | None = None) -> None:
        self._ttl = ttl
        self._clock = clock or time.monotonic
        self._seen: dict[str, float] = {}
        self._lock = threading.Lock()

    def is_duplicate(self, message_id: str | None) -> bool:
        if not message_id:
            return False
        now = self._clock()
        with self._lock:
            for key in [key for key, seen_at in self._seen.items() if now - seen_at > self._ttl]:
                del self._seen[key]
            if message_id in self._seen:
                return True
            self._seen[message_id] = now
            return False


def strip_mentions(text: str) -> str:
    return _MENTION_RE.sub("", text).strip()


def to_lark_markdown(text: str) -> str:
    text = _HEADER_RE.sub(r"**\2**", text)
    return _RULE_RE.sub("─" * 21, text)


def split_paragraphs(text: str, limit: int) -> list[str]:
    """Group paragraphs into chunks of at most ``limit`` characters where possible."""

    if len(text) <= limit:
        return [text]
    chunks: list[str] = []
    buffer = ""
    for paragraph in text.split("\n\n"):
        if buffer and len(buffer) + len(paragraph) + 2 > limit:
            chunks.append(buffer)
            buffer = paragraph
        else:
            buffer = f"{buffer}\n\n{paragraph}" if buffer else paragraph
    if buffer:
        chunks.append(buffer)
    return chunks


def parse_text_content(content: str | None) -> str:
    try:
        payload = json.loads(content or "{}")
    except json.JSONDecodeError:
        return content or ""
    text = payload.get("text", "") if isinstance(payload, dict) else ""
    return text if isinstance(text, str) else ""


class FeishuAdapter(BotAdapter):
    name = "feishu"
    chunk_limit = 3800

    def __init__(
        self,
        app_id: str | None,
        app_secret: str | None,
        allowed_chat_ids: Iterable[str] = (),
        *,
        client: lark.Client | None = None,
    ) -> None:
        super().__init__(allowed_chat_ids)
        if not app_id or not app_secret:
            raise AdapterAuthError("Feishu app_id and app_secret are required")
        self._app_id = app_id
        self._app_secret = app_secret
        self._client = client or lark.Client.builder().app_id(app_id).app_secret(app_secret).build()
        self._seen = SeenMessages()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._handler: MessageHandler | None = None
        self._thread: threading.Thread | None = None

    async def get_me(self) -> dict[str, Any]:
        return {"app_id": self._app_id, "app_name": "MetaMe"}

    def _create_message(self, chat_id: str, msg_type: str, payload: dict[str, Any]) -> None:
        request = (
            CreateMessageRequest.builder()
            .receive_id_type("chat_id")
            .request_body(
                CreateMessageRequestBody.builder()
                .receive_id(chat_id)
                .msg_type(msg_type)
                .content(json.dumps(payload, ensure_ascii=False))
                .build()
            )
            .build()
        )
        response = self._client.im.v1.message.create(request)
        if not response.success():
            raise FeishuApiError(f"send message failed: code={response.code} msg={response.msg}")

    async def _send(self, chat_id: str, msg_type: str, payload: dict[str, Any]) -> None:
        await asyncio.to_thread(self._create_message, chat_id, msg_type, payload)

    async def send_message(self, chat_id: str, text: str) -> None:
        for chunk in split_message(text, self.chunk_limit):
            await self._send(chat_id, "text", {"text": chunk})

    async def send_markdown(self, chat_id: str, text: str) -> None:
        chunks = split_paragraphs(to_lark_markdown(text), self.chunk_limit)
        card = {
            "schema": "2.0",
            "body": {
                "elements": [
                    {"tag": "markdown", "content": chunk, "text_size": "x-large"} for chunk in chunks
                ]
            },
        }
        try:
            await self._send(chat_id, "interactive", card)
        except FeishuApiError as exc:
            logger.debug("Card rejected; sending plain text", extra={"error": str(exc)})
            await self.send_message(chat_id, text)

    async def send_buttons(self, chat_id: str, title: str, rows: ButtonRows) -> None:
        elements = [
            {
                "tag": "action",
                "actions": [
                    {
                        "tag": "button",
                        "text": {"tag": "plain_text", "content": button.text},
                        "type": "default",
                        "value": {"cmd": button.command},
                    }
                    for button in row
                ],
            }
            for row in rows
        ]
        card = {
            "config": {"wide_screen_mode": True},
            "header": {"title": {"tag": "plain_text", "content": title}, "template": "blue"},
            "elements": elements,
        }
        await self._send(chat_id, "interactive", card)

    async def send_typing(self, chat_id: str) -> None:
        return None

    def handle_message_event(self, data: P2ImMessageReceiveV1) -> None:
        """Called on the websocket thread for ``im.message.receive_v1``."""

        message = data.event.message if data.event else None
        if message is None or self._seen.is_duplicate(message.message_id):
            return
        if message.message_type != "text":
            return
        text = strip_mentions(parse_text_content(message.content))
        if text:
            self._hand_off(message.chat_id, text)

    def handle_card_action(self, data: P2CardActionTrigger) -> P2CardActionTriggerResponse:
        """Called on the websocket thread when a card button is pressed."""

        event = data.event
        value = event.action.value if event and event.action else None
        chat_id = event.context.open_chat_id if event and event.context else None
        command = value.get("cmd") if isinstance(value, dict) else None
        if chat_id and command:
            self._hand_off(chat_id, command)
        return P2CardActionTriggerResponse({})

    def _hand_off(self, chat_id: str, text: str) -> None:
        if self._loop is None or self._handler is None:
            return
        self._loop.call_soon_threadsafe(self._dispatch, self._handler, str(chat_id), text)

    async def start_receiving(self, handler: MessageHandler) -> None:
        self._loop = asyncio.get_running_loop()
        self._handler = handler
        event_handler = (
            lark.EventDispatcherHandler.builder("", "")
            .register_p2_im_message_receive_v1(self.handle_message_event)
            .register_p2_card_action_trigger(self.handle_card_action)
            .build()
        )
        ws_client = lark.ws.Client(
            self._app_id,
            self._app_secret,
            event_handler=event_handler,
            log_level=lark.LogLevel.INFO,
        )
        self._thread = threading.Thread(
            target=self._run_ws, args=(ws_client,), name="feishu-ws", daemon=True
        )
        self._thread.start()
        logger.info("Feishu websocket client started", extra={"allowed_chats": len(self.allowed_chat_ids)})

    @staticmethod
    def _run_ws(ws_client: lark.ws.Client) -> None:
        # lark-oapi 1.3/1.4: ws.client runs every connection on its module-level
        # `loop`, so only one websocket client per process is supported.
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        lark_ws_client.loop = loop
        try:
            ws_client.start()
        except Exception:
            logger.exception("Feishu websocket client stopped")

    async def stop(self) -> None:
        # The websocket client has no shutdown call; its daemon thread ends with the process.
        self._handler = None
        self._loop = None


__all__ = [
    "FeishuAdapter",
    "FeishuApiError",
    "SeenMessages",
    "parse_text_content",
    "split_paragraphs",
    "strip_mentions",
    "to_lark_markdown",
]
