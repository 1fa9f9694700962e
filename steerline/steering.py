"""Bounded buffer of user messages received while a query is in flight."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime

from steerline.exceptions import SteeringValidationError
from steerline.logging import get_logger

log = get_logger(__name__)

DEFAULT_MAX_STEERING_MESSAGES = 20
STEERING_SEPARATOR = "\n---\n"


@dataclass(frozen=True)
class SteeringMessage:
    """A single buffered user message."""

    content: str
    message_id: int
    timestamp: float
    tool_context: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "content": self.content,
            "message_id": self.message_id,
            "timestamp": self.timestamp,
            "tool_context": self.tool_context,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "SteeringMessage":
        tool_context = data.get("tool_context")
        return cls(
            content=str(data.get("content", "")),
            message_id=int(data.get("message_id", 0)),  # type: ignore[arg-type]
            timestamp=float(data.get("timestamp", 0.0)),  # type: ignore[arg-type]
            tool_context=str(tool_context) if tool_context else None,
        )


def create_steering_message(
    content: str,
    message_id: int,
    tool_context: str | None = None,
    *,
    timestamp: float | None = None,
) -> SteeringMessage:
    """Validate raw input and build a steering entry."""
    trimmed = str(content or "").strip()
    if not trimmed:
        raise SteeringValidationError("content", "message must not be empty")
    if isinstance(message_id, bool) or not isinstance(message_id, int) or message_id <= 0:
        raise SteeringValidationError("message_id", f"expected positive integer, got {message_id!r}")
    return SteeringMessage(
        content=trimmed,
        message_id=message_id,
        timestamp=time.time() if timestamp is None else timestamp,
        tool_context=(tool_context or None),
    )


def format_clock(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).strftime("%H:%M:%S")


def format_steering_entry(message: SteeringMessage) -> str:
    clock = format_clock(message.timestamp)
    if message.tool_context:
        return f"[{clock} (during {message.tool_context})] {message.content}"
    return f"[{clock}] {message.content}"


def format_steering(messages: list[SteeringMessage]) -> str | None:
    if not messages:
        return None
    return STEERING_SEPARATOR.join(format_steering_entry(m) for m in messages)


class SteeringBuffer:
    """FIFO of steering messages; overflow evicts the oldest entry."""

    def __init__(self, max_messages: int = DEFAULT_MAX_STEERING_MESSAGES):
        self.max_messages = max(1, int(max_messages))
        self._messages: deque[SteeringMessage] = deque()

    def push(self, content: str, message_id: int, tool_context: str | None = None) -> bool:
        """Buffer a message. Returns True when the oldest entry was evicted."""
        message = create_steering_message(content, message_id, tool_context)
        return self.push_message(message)

    def push_message(self, message: SteeringMessage) -> bool:
        evicted = False
        if len(self._messages) >= self.max_messages:
            dropped = self._messages.popleft()
            evicted = True
            log.warning(
                "Steering buffer full, evicted oldest message",
                evicted_message_id=dropped.message_id,
                max_messages=self.max_messages,
            )
        self._messages.append(message)
        return evicted

    def restore(self, messages: list[SteeringMessage]) -> int:
        """Put previously extracted messages back ahead of the current ones.

        Returns the number of entries dropped to stay within the bound.
        """
        if not messages:
            return 0
        merged = list(messages) + list(self._messages)
        dropped = max(0, len(merged) - self.max_messages)
        self._messages = deque(merged[dropped:])
        if dropped:
            log.warning("Steering restore exceeded capacity", dropped=dropped)
        return dropped

    def has_pending(self) -> bool:
        return bool(self._messages)

    def count(self) -> int:
        return len(self._messages)

    def peek(self) -> str | None:
        return format_steering(list(self._messages))

    def consume(self) -> str | None:
        formatted = format_steering(list(self._messages))
        self._messages.clear()
        return formatted

    def extract(self) -> list[SteeringMessage]:
        messages = list(self._messages)
        self._messages.clear()
        return messages

    def clear(self) -> int:
        count = len(self._messages)
        self._messages.clear()
        return count

    def __len__(self) -> int:
        return len(self._messages)
