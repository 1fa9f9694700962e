"""Recovery of steering messages stranded by a reset, crash, or interrupt."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum

from steerline.chat_history import ChatTurn
from steerline.logging import get_logger
from steerline.steering import SteeringMessage, format_clock

log = get_logger(__name__)


class RecoveryPolicy(str, Enum):
    RESEND = "resend"
    DISCARD = "discard"
    CONTEXT = "context"
    CONTEXT_HISTORY = "history"


@dataclass(frozen=True)
class PendingRecoverySet:
    messages: list[SteeringMessage]
    prompt_message_id: int | None = None
    chat_id: int | str | None = None
    prompted_at: float = field(default_factory=time.time)


class RecoveryManager:
    """Holds at most one pending recovery set and releases it exactly once."""

    def __init__(self) -> None:
        self._pending: PendingRecoverySet | None = None

    def open(
        self,
        messages: list[SteeringMessage],
        prompt_message_id: int | None = None,
        chat_id: int | str | None = None,
    ) -> None:
        """Open a recovery set, or refine the one already open.

        Re-opening only updates the prompt id and chat; it never replaces the
        stranded messages, so a refined prompt cannot lose data.
        """
        if self._pending is not None:
            self._pending = replace(
                self._pending,
                prompt_message_id=prompt_message_id or self._pending.prompt_message_id,
                chat_id=chat_id if chat_id is not None else self._pending.chat_id,
            )
            return
        if not messages:
            return
        self._pending = PendingRecoverySet(
            messages=list(messages),
            prompt_message_id=prompt_message_id,
            chat_id=chat_id,
        )
        log.info("Recovery set opened", count=len(messages), prompt_message_id=prompt_message_id)

    def has_pending(self) -> bool:
        return self._pending is not None

    def peek_pending(self) -> PendingRecoverySet | None:
        return self._pending

    def resolve(self) -> list[SteeringMessage] | None:
        pending = self._pending
        self._pending = None
        if pending is None:
            return None
        return list(pending.messages)


def format_recovery_context(messages: list[SteeringMessage]) -> str:
    lines = [f"[CONTEXT FROM INTERRUPTED SESSION - {len(messages)} message(s)]"]
    for message in messages:
        lines.append(f"[{format_clock(message.timestamp)}] {message.content}")
    lines.append("[END CONTEXT]")
    return "\n".join(lines)


def format_history_context(turns: list[ChatTurn]) -> str:
    if not turns:
        return ""
    lines = ["[RECENT CHAT HISTORY]"]
    for turn in turns:
        lines.append(f"{turn.role}: {turn.content}")
    lines.append("[END HISTORY]")
    return "\n".join(lines)


def format_recovery_preview(messages: list[SteeringMessage], max_length: int = 1000) -> str:
    """Short listing of stranded messages for the recovery prompt."""
    lines: list[str] = []
    used = 0
    for idx, message in enumerate(messages):
        snippet = message.content if len(message.content) <= 120 else message.content[:117] + "..."
        line = f"{idx + 1}. [{format_clock(message.timestamp)}] {snippet}"
        if used + len(line) > max_length:
            lines.append(f"... and {len(messages) - idx} more")
            break
        lines.append(line)
        used += len(line) + 1
    return "\n".join(lines)


def build_recovery_prompt(messages: list[SteeringMessage]) -> str:
    return (
        f"{len(messages)} message(s) were not processed:\n"
        f"{format_recovery_preview(messages)}\n\n"
        "What should happen to them?"
    )
