"""Channel (chat transport) boundary types."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from steerline.exceptions import ChannelBoundaryError
from steerline.logging import get_logger
from steerline.session.identity import SessionIdentity

log = get_logger(__name__)


class Reaction:
    """Reaction names the core sends; channels map them to native emoji."""

    PROCESSING = "processing"
    COMPLETE = "complete"
    BUFFERED = "buffered"
    INTERRUPTED = "interrupted"
    ERROR = "error"


class BoundaryCode:
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    INVALID_PAYLOAD = "invalid_payload"


BOUNDARY_NOTICES = {
    BoundaryCode.UNAUTHORIZED: "You are not authorized to use this bot.",
    BoundaryCode.RATE_LIMITED: "Too many messages. Please wait a moment and try again.",
    BoundaryCode.INVALID_PAYLOAD: "This message type is not supported.",
}


@dataclass(frozen=True)
class InboundMessage:
    """A normalized inbound text message or button callback."""

    identity: SessionIdentity
    chat_id: int
    text: str
    message_id: int | None = None
    timestamp_ms: int = 0
    thread_id: int | None = None
    user_id: int = 0
    username: str = ""
    is_interrupt: bool = False
    callback_data: str | None = None
    callback_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_callback(self) -> bool:
        return self.callback_data is not None

    @property
    def is_command(self) -> bool:
        return not self.is_callback and self.text.lstrip().startswith("/")


@dataclass(frozen=True)
class Button:
    label: str
    data: str


@dataclass(frozen=True)
class TextPayload:
    chat_id: int
    text: str
    reply_to: int | None = None
    thread_id: int | None = None


@dataclass(frozen=True)
class StatusPayload:
    """System notice; rendered distinctly from agent output."""

    chat_id: int
    text: str
    thread_id: int | None = None


@dataclass(frozen=True)
class ReactionPayload:
    chat_id: int
    message_id: int
    reaction: str


@dataclass(frozen=True)
class ChoicePayload:
    chat_id: int
    text: str
    buttons: list[list[Button]] = field(default_factory=list)
    thread_id: int | None = None


OutboundPayload = TextPayload | StatusPayload | ReactionPayload | ChoicePayload


@dataclass(frozen=True)
class DeliveryReceipt:
    message_id: int | None
    delivered_at: float = field(default_factory=time.time)


class Channel(ABC):
    """Abstract chat transport."""

    @abstractmethod
    def normalize_inbound(self, raw: Any) -> InboundMessage:
        """Normalize a raw update; raises ChannelBoundaryError when refused."""

    @abstractmethod
    async def deliver_outbound(self, payload: OutboundPayload) -> DeliveryReceipt:
        pass

    async def delete_message(self, chat_id: int, message_id: int) -> bool:
        del chat_id, message_id
        return False

    async def answer_callback(self, callback_id: str, text: str = "") -> None:
        del callback_id, text

    @staticmethod
    def notice_for(error: ChannelBoundaryError) -> str:
        return BOUNDARY_NOTICES.get(error.code, "Message could not be processed.")


class Outbox:
    """Best-effort sends on top of a channel.

    Notices and reactions are advisory; a failed send is logged and never
    interrupts the flow that produced it.
    """

    def __init__(self, channel: Channel):
        self.channel = channel

    async def send(self, payload: OutboundPayload) -> DeliveryReceipt | None:
        try:
            return await self.channel.deliver_outbound(payload)
        except Exception as e:
            log.warning("Outbound delivery failed", kind=type(payload).__name__, error=str(e))
            return None

    async def text(self, chat_id: int, text: str, *, reply_to: int | None = None, thread_id: int | None = None) -> DeliveryReceipt | None:
        return await self.send(TextPayload(chat_id=chat_id, text=text, reply_to=reply_to, thread_id=thread_id))

    async def notice(self, chat_id: int, text: str, *, thread_id: int | None = None) -> DeliveryReceipt | None:
        return await self.send(StatusPayload(chat_id=chat_id, text=text, thread_id=thread_id))

    async def react(self, chat_id: int, message_id: int | None, reaction: str) -> None:
        if not message_id:
            return
        await self.send(ReactionPayload(chat_id=chat_id, message_id=message_id, reaction=reaction))

    async def delete(self, chat_id: int, message_id: int | None) -> bool:
        if not message_id:
            return False
        try:
            return await self.channel.delete_message(chat_id, message_id)
        except Exception as e:
            log.warning("Message delete failed", chat_id=chat_id, message_id=message_id, error=str(e))
            return False
