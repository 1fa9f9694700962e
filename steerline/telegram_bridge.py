"""Telegram Bot API channel (long polling, messages, keyboards, reactions)."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

import httpx

from steerline.channel import (
    BoundaryCode,
    Channel,
    ChoicePayload,
    DeliveryReceipt,
    InboundMessage,
    OutboundPayload,
    Reaction,
    ReactionPayload,
    StatusPayload,
    TextPayload,
)
from steerline.exceptions import ChannelBoundaryError
from steerline.logging import get_logger
from steerline.order_policy import is_interrupt_text
from steerline.session.identity import DEFAULT_TENANT, SessionIdentity

log = get_logger(__name__)

MAX_MESSAGE_CHARS = 3800
MIN_SPLIT_AT = 800

REACTION_EMOJI = {
    Reaction.PROCESSING: "👀",
    Reaction.COMPLETE: "👌",
    Reaction.BUFFERED: "✍",
    Reaction.INTERRUPTED: "⚡",
    Reaction.ERROR: "😢",
}

STATUS_PREFIX = "ℹ️ "


@dataclass
class TelegramUpdate:
    """One raw update: a message or a button press."""

    update_id: int
    message: dict[str, Any] | None = None
    callback_query: dict[str, Any] | None = None


@dataclass
class UserRateLimiter:
    """Sliding-window message budget per user."""

    max_messages: int = 20
    window_seconds: float = 60.0
    _hits: dict[int, deque[float]] = field(default_factory=dict)

    def check(self, user_id: int, now: float | None = None) -> tuple[bool, float]:
        current = time.monotonic() if now is None else now
        hits = self._hits.setdefault(user_id, deque())
        while hits and current - hits[0] >= self.window_seconds:
            hits.popleft()
        if len(hits) >= self.max_messages:
            return False, max(0.0, self.window_seconds - (current - hits[0]))
        hits.append(current)
        return True, 0.0


def split_message(text: str, max_len: int = MAX_MESSAGE_CHARS) -> list[str]:
    """Split on newlines where possible so chunks stay under Telegram's limit."""
    raw = str(text or "").strip()
    chunks: list[str] = []
    while raw:
        if len(raw) <= max_len:
            chunks.append(raw)
            break
        split_at = raw.rfind("\n", 0, max_len)
        if split_at < MIN_SPLIT_AT:
            split_at = max_len
        chunks.append(raw[:split_at].rstrip())
        raw = raw[split_at:].lstrip()
    return chunks


class TelegramChannel(Channel):
    """Telegram Bot API helper implementing the channel boundary."""

    def __init__(
        self,
        token: str,
        api_base_url: str = "https://api.telegram.org",
        *,
        allowed_users: list[int] | None = None,
        tenant: str = DEFAULT_TENANT,
        rate_limiter: UserRateLimiter | None = None,
    ):
        self.token = token.strip()
        self.api_base_url = (api_base_url or "https://api.telegram.org").rstrip("/")
        self.allowed_users = set(allowed_users or [])
        self.tenant = tenant
        self.rate_limiter = rate_limiter or UserRateLimiter()
        self._client = httpx.AsyncClient(timeout=40.0)

    @property
    def enabled(self) -> bool:
        return bool(self.token)

    def _url(self, method: str) -> str:
        return f"{self.api_base_url}/bot{self.token}/{method}"

    async def close(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, payload: dict[str, Any]) -> Any:
        response = await self._client.post(self._url(method), json=payload)
        response.raise_for_status()
        body = response.json()
        if isinstance(body, dict):
            return body.get("result")
        return None

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def get_updates(self, offset: int | None = None, timeout: int = 25) -> list[TelegramUpdate]:
        """Poll Telegram updates (messages and callback queries)."""
        params: dict[str, Any] = {
            "timeout": max(1, int(timeout)),
            "allowed_updates": '["message","callback_query"]',
        }
        if offset is not None:
            params["offset"] = int(offset)
        response = await self._client.get(self._url("getUpdates"), params=params)
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict) or payload.get("ok") is not True:
            return []
        results = payload.get("result")
        if not isinstance(results, list):
            return []

        updates: list[TelegramUpdate] = []
        for item in results:
            if not isinstance(item, dict):
                continue
            message = item.get("message")
            callback = item.get("callback_query")
            updates.append(
                TelegramUpdate(
                    update_id=int(item.get("update_id", 0)),
                    message=message if isinstance(message, dict) else None,
                    callback_query=callback if isinstance(callback, dict) else None,
                )
            )
        return updates

    def _authorize(self, user_id: int) -> None:
        if self.allowed_users and user_id not in self.allowed_users:
            log.warning("Unauthorized Telegram user", user_id=user_id)
            raise ChannelBoundaryError(BoundaryCode.UNAUTHORIZED, f"User {user_id} is not allowed")
        allowed, retry_after = self.rate_limiter.check(user_id)
        if not allowed:
            raise ChannelBoundaryError(
                BoundaryCode.RATE_LIMITED,
                f"User {user_id} rate limited for {retry_after:.0f}s",
                retryable=True,
            )

    def _identity(self, chat_id: int, thread_id: int | None) -> SessionIdentity:
        return SessionIdentity.create(chat_id, thread_id, tenant=self.tenant)

    def normalize_inbound(self, raw: TelegramUpdate) -> InboundMessage:
        if raw.callback_query is not None:
            return self._normalize_callback(raw.callback_query)
        msg = raw.message
        if msg is None:
            raise ChannelBoundaryError(BoundaryCode.INVALID_PAYLOAD, "Unsupported update type")

        from_user = msg.get("from")
        chat = msg.get("chat")
        if not isinstance(from_user, dict) or not isinstance(chat, dict):
            raise ChannelBoundaryError(BoundaryCode.INVALID_PAYLOAD, "Message without sender or chat")
        user_id = int(from_user.get("id", 0))
        chat_id = int(chat.get("id", 0))
        if user_id == 0 or chat_id == 0:
            raise ChannelBoundaryError(BoundaryCode.INVALID_PAYLOAD, "Message without sender or chat")
        text = str(msg.get("text", "")).strip()
        if not text:
            raise ChannelBoundaryError(BoundaryCode.INVALID_PAYLOAD, "Only text messages are supported")
        self._authorize(user_id)

        thread_raw = msg.get("message_thread_id")
        thread_id = int(thread_raw) if thread_raw is not None else None
        return InboundMessage(
            identity=self._identity(chat_id, thread_id),
            chat_id=chat_id,
            text=text,
            message_id=int(msg.get("message_id", 0)) or None,
            timestamp_ms=int(msg.get("date", 0)) * 1000,
            thread_id=thread_id,
            user_id=user_id,
            username=str(from_user.get("username", "")).strip(),
            is_interrupt=is_interrupt_text(text),
        )

    def _normalize_callback(self, query: dict[str, Any]) -> InboundMessage:
        from_user = query.get("from")
        msg = query.get("message")
        if not isinstance(from_user, dict) or not isinstance(msg, dict):
            raise ChannelBoundaryError(BoundaryCode.INVALID_PAYLOAD, "Callback without sender or message")
        chat = msg.get("chat") if isinstance(msg.get("chat"), dict) else {}
        user_id = int(from_user.get("id", 0))
        chat_id = int(chat.get("id", 0))
        if user_id == 0 or chat_id == 0:
            raise ChannelBoundaryError(BoundaryCode.INVALID_PAYLOAD, "Callback without sender or chat")
        if self.allowed_users and user_id not in self.allowed_users:
            raise ChannelBoundaryError(BoundaryCode.UNAUTHORIZED, f"User {user_id} is not allowed")

        thread_raw = msg.get("message_thread_id")
        thread_id = int(thread_raw) if thread_raw is not None else None
        return InboundMessage(
            identity=self._identity(chat_id, thread_id),
            chat_id=chat_id,
            text="",
            message_id=int(msg.get("message_id", 0)) or None,
            timestamp_ms=int(time.time() * 1000),
            thread_id=thread_id,
            user_id=user_id,
            username=str(from_user.get("username", "")).strip(),
            callback_data=str(query.get("data", "")),
            callback_id=str(query.get("id", "")) or None,
        )

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        reply_to_message_id: int | None = None,
        thread_id: int | None = None,
        reply_markup: dict[str, Any] | None = None,
    ) -> int | None:
        """Send text, splitting long messages; returns the last message id."""
        last_id: int | None = None
        chunks = split_message(text)
        for idx, chunk in enumerate(chunks):
            payload: dict[str, Any] = {
                "chat_id": int(chat_id),
                "text": chunk,
                "disable_web_page_preview": True,
            }
            if thread_id and thread_id != 1:
                payload["message_thread_id"] = int(thread_id)
            if reply_to_message_id and idx == 0:
                payload["reply_to_message_id"] = int(reply_to_message_id)
            if reply_markup is not None and idx == len(chunks) - 1:
                payload["reply_markup"] = reply_markup
            result = await self._call("sendMessage", payload)
            if isinstance(result, dict) and result.get("message_id"):
                last_id = int(result["message_id"])
        return last_id

    async def set_reaction(self, chat_id: int, message_id: int, emoji: str) -> None:
        payload: dict[str, Any] = {
            "chat_id": int(chat_id),
            "message_id": int(message_id),
            "reaction": [{"type": "emoji", "emoji": emoji}],
        }
        await self._call("setMessageReaction", payload)

    async def deliver_outbound(self, payload: OutboundPayload) -> DeliveryReceipt:
        if isinstance(payload, ReactionPayload):
            emoji = REACTION_EMOJI.get(payload.reaction, payload.reaction)
            await self.set_reaction(payload.chat_id, payload.message_id, emoji)
            return DeliveryReceipt(message_id=payload.message_id)
        if isinstance(payload, ChoicePayload):
            markup = {
                "inline_keyboard": [
                    [{"text": button.label, "callback_data": button.data} for button in row]
                    for row in payload.buttons
                ]
            }
            message_id = await self.send_message(
                payload.chat_id,
                payload.text,
                thread_id=payload.thread_id,
                reply_markup=markup,
            )
            return DeliveryReceipt(message_id=message_id)
        if isinstance(payload, StatusPayload):
            message_id = await self.send_message(
                payload.chat_id,
                STATUS_PREFIX + payload.text,
                thread_id=payload.thread_id,
            )
            return DeliveryReceipt(message_id=message_id)
        if isinstance(payload, TextPayload):
            message_id = await self.send_message(
                payload.chat_id,
                payload.text,
                reply_to_message_id=payload.reply_to,
                thread_id=payload.thread_id,
            )
            return DeliveryReceipt(message_id=message_id)
        raise TypeError(f"Unsupported outbound payload: {type(payload).__name__}")

    async def delete_message(self, chat_id: int, message_id: int) -> bool:
        result = await self._call("deleteMessage", {"chat_id": int(chat_id), "message_id": int(message_id)})
        return bool(result)

    async def answer_callback(self, callback_id: str, text: str = "") -> None:
        payload: dict[str, Any] = {"callback_query_id": callback_id}
        if text:
            payload["text"] = text
        await self._call("answerCallbackQuery", payload)

    async def set_my_commands(self, commands: list[tuple[str, str]]) -> None:
        """Register slash commands shown in Telegram command picker."""
        payload_commands: list[dict[str, str]] = []
        for name, description in commands:
            command = str(name or "").strip().lower().lstrip("/")
            desc = str(description or "").strip()
            if not command or not desc:
                continue
            payload_commands.append({"command": command, "description": desc})
        if not payload_commands:
            return
        await self._call("setMyCommands", {"commands": payload_commands})
