"""Per-thread timestamp ordering gate for inbound messages."""

from __future__ import annotations

from dataclasses import dataclass

from steerline.logging import get_logger

log = get_logger(__name__)

INTERRUPT_SIGIL = "!"
MAIN_THREAD = "main"


@dataclass(frozen=True)
class OrderDecision:
    accepted: bool
    interrupt_bypass_applied: bool = False


def is_interrupt_text(text: str) -> bool:
    return str(text or "").lstrip().startswith(INTERRUPT_SIGIL)


def thread_key(chat_id: int | str, thread_id: int | str | None = None) -> str:
    """Build the ordering key; unthreaded and general-topic messages share 'main'."""
    if thread_id is None or str(thread_id).strip() in ("", "1"):
        return f"{chat_id}:{MAIN_THREAD}"
    return f"{chat_id}:{thread_id}"


class OrderPolicy:
    """Reject messages older than the newest one seen on the same thread.

    Interrupts are let through even when stale.
    """

    def __init__(self) -> None:
        self._last_seen: dict[str, int] = {}

    def last_seen(self, key: str) -> int:
        return self._last_seen.get(key, 0)

    def evaluate(self, key: str, timestamp_ms: int, text: str) -> OrderDecision:
        last = self._last_seen.get(key, 0)
        stale = timestamp_ms < last
        bypass = stale and is_interrupt_text(text)
        if stale and not bypass:
            log.debug(
                "Dropping out-of-order message",
                thread=key,
                timestamp_ms=timestamp_ms,
                last_seen_ms=last,
            )
            return OrderDecision(accepted=False)
        self._last_seen[key] = max(last, timestamp_ms)
        if bypass:
            log.info("Interrupt bypassed ordering gate", thread=key, timestamp_ms=timestamp_ms)
        return OrderDecision(accepted=True, interrupt_bypass_applied=bypass)

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._last_seen.clear()
        else:
            self._last_seen.pop(key, None)
