"""Persist buffered steering across restarts."""

from __future__ import annotations

import asyncio
import json
import signal
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from steerline.exceptions import SessionIdentityError, SteeringValidationError
from steerline.logging import get_logger
from steerline.session import SessionRegistry, parse_session_key
from steerline.steering import SteeringMessage

log = get_logger(__name__)

RESTORED_TOOL_CONTEXT = "before shutdown"


def save_pending_steering(registry: SessionRegistry, path: Path | str) -> int:
    """Write every non-empty steering buffer to ``path``; returns messages saved.

    Saved buffers are cleared so a second save cannot duplicate them.
    """
    target = Path(path).expanduser()
    sessions: list[dict[str, Any]] = []
    total = 0
    for session in registry.sessions():
        if not session.has_steering_messages():
            continue
        messages = session.extract_steering()
        sessions.append(
            {
                "session_key": session.session_key,
                "messages": [m.to_dict() for m in messages],
            }
        )
        total += len(messages)

    if not sessions:
        return 0

    target.parent.mkdir(parents=True, exist_ok=True)
    data = {"saved_at": datetime.now(UTC).isoformat(), "sessions": sessions}
    target.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    log.info("Saved pending steering", path=str(target), sessions=len(sessions), messages=total)
    return total


def restore_pending_steering(registry: SessionRegistry, path: Path | str) -> int:
    """Load steering saved by :func:`save_pending_steering`, then delete the file."""
    source = Path(path).expanduser()
    if not source.exists():
        return 0

    restored = 0
    try:
        data = json.loads(source.read_text(encoding="utf-8"))
        entries = data.get("sessions", []) if isinstance(data, dict) else []
        for entry in entries:
            identity = parse_session_key(str(entry.get("session_key", "")))
            messages = [
                SteeringMessage.from_dict({**raw, "tool_context": RESTORED_TOOL_CONTEXT})
                for raw in entry.get("messages", [])
                if isinstance(raw, dict)
            ]
            if not messages:
                continue
            session = registry.get_or_create(identity)
            session.restore_steering(messages)
            restored += len(messages)
    except (OSError, ValueError, TypeError, AttributeError, SessionIdentityError, SteeringValidationError) as e:
        log.warning("Ignoring malformed pending steering file", path=str(source), error=str(e))

    try:
        source.unlink()
    except OSError as e:
        log.warning("Could not delete pending steering file", path=str(source), error=str(e))

    if restored:
        log.info("Restored pending steering", messages=restored)
    return restored


def install_signal_handlers(loop: asyncio.AbstractEventLoop, callback: Callable[[], None]) -> list[signal.Signals]:
    """Route SIGTERM/SIGINT to ``callback``; returns the signals installed."""
    installed: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, callback)
        except (NotImplementedError, RuntimeError):
            log.debug("Signal handler unavailable", signal=sig.name)
            continue
        installed.append(sig)
    return installed
