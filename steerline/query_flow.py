"""One user turn: run the query, then drain buffered steering."""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace

from steerline.callbacks import build_choice_payload
from steerline.channel import Outbox, Reaction
from steerline.chat_history import ChatHistory
from steerline.choice_extractor import extract_user_choice
from steerline.choice_flow import ChoiceState
from steerline.config import Config, get_config
from steerline.exceptions import QueryCancelledError
from steerline.logging import get_logger
from steerline.rate_limit import (
    FallbackAction,
    TierUsage,
    UsageSource,
    format_rate_limit_notice,
    is_abort_error,
    is_crash_error,
    is_rate_limit_error,
)
from steerline.session import Session
from steerline.steering import format_steering

log = get_logger(__name__)

AUTO_CONTINUE_HEADER = "[Messages sent during previous response - processing now]"
MAX_CRASH_RETRIES = 1


@dataclass(frozen=True)
class ReplyTarget:
    chat_id: int
    message_id: int | None = None
    thread_id: int | None = None


@dataclass
class FlowDeps:
    """Collaborators shared by every query flow."""

    outbox: Outbox
    config: Config = field(default_factory=get_config)
    history: ChatHistory | None = None
    usage_source: UsageSource | None = None
    clock: Callable[[], float] = time.time
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep


class _Lease:
    """Processing lease that a crash retry can re-acquire after the kill."""

    def __init__(self, session: Session):
        self.session = session
        self._release = session.start_processing()

    def renew(self) -> None:
        self._release()
        self._release = self.session.start_processing()

    def release(self) -> None:
        self._release()


async def _notice(deps: FlowDeps, target: ReplyTarget, text: str) -> None:
    await deps.outbox.notice(target.chat_id, text, thread_id=target.thread_id)


async def _fetch_usage(deps: FlowDeps) -> TierUsage | None:
    if deps.usage_source is None:
        return None
    try:
        return await deps.usage_source.fetch_usage()
    except Exception as e:
        log.warning("Usage fetch failed", error=str(e))
        return None


async def _record(deps: FlowDeps, session: Session, role: str, content: str) -> None:
    if deps.history is None:
        return
    try:
        await deps.history.append(session.session_key, role, content)
    except Exception as e:
        log.warning("Chat history append failed", session_key=session.session_key, error=str(e))


# ---------------------------------------------------------------------------
# Error paths
# ---------------------------------------------------------------------------


async def _on_stopped(session: Session, deps: FlowDeps, target: ReplyTarget) -> None:
    if session.consume_interrupt_flag():
        log.info("Query interrupted by new message", session_key=session.session_key)
    else:
        await _notice(deps, target, "Query stopped.")
    session.clear_stop_requested()


async def _on_rate_limit(
    session: Session,
    text: str,
    error: Exception,
    deps: FlowDeps,
    target: ReplyTarget,
) -> str | None:
    usage = await _fetch_usage(deps)
    now = deps.clock()
    action = session.rate_limit.on_rate_limit(now, usage)
    log.warning("Rate limited", session_key=session.session_key, action=action.value, error=str(error))

    if action == FallbackAction.RETRY_WITH_FALLBACK:
        await _notice(deps, target, f"Rate limit reached. Retrying with {session.rate_limit.model_override}.")
        try:
            response = await session.send_message_streaming(text)
        except Exception as retry_error:
            session.rate_limit.on_retry_failed()
            log.error("Fallback retry failed", session_key=session.session_key, error=str(retry_error))
            await _notice(deps, target, format_rate_limit_notice(retry_error, usage, now))
            return None
        session.rate_limit.on_success()
        return response

    if action == FallbackAction.COOLDOWN_STARTED:
        minutes = max(1, round(session.rate_limit.cooldown_seconds / 60))
        await _notice(deps, target, f"Rate limited repeatedly. Pausing retries for {minutes} minute(s).")
    elif action == FallbackAction.COOLDOWN_ACTIVE:
        await _notice(deps, target, "Rate limit cooldown active. Please wait before sending more messages.")
    else:
        await _notice(deps, target, format_rate_limit_notice(error, usage, now))
    return None


async def _report_failure(session: Session, error: Exception, deps: FlowDeps, target: ReplyTarget) -> None:
    cleared = len(session.extract_steering())
    log.error("Query error", session_key=session.session_key, error=str(error), cleared=cleared)
    if cleared:
        await _notice(deps, target, f"{cleared} queued message(s) were cleared because of the error.")
    await _notice(deps, target, f"Error: {str(error)[:200]}")
    await deps.outbox.react(target.chat_id, target.message_id, Reaction.ERROR)


async def _send(
    session: Session,
    text: str,
    deps: FlowDeps,
    target: ReplyTarget,
    lease: _Lease,
    *,
    crash_retries: int = MAX_CRASH_RETRIES,
) -> str | None:
    """Send one query; error paths notify the user and return None."""
    generation = session.generation
    try:
        response = await session.send_message_streaming(text)
    except QueryCancelledError:
        await _on_stopped(session, deps, target)
        return None
    except Exception as e:
        if is_abort_error(e):
            if session.is_guard_current(generation):
                await _on_stopped(session, deps, target)
            return None
        if is_rate_limit_error(e):
            return await _on_rate_limit(session, text, e, deps, target)
        if is_crash_error(e):
            return await _on_crash(session, e, deps, target, lease, crash_retries)
        await _report_failure(session, e, deps, target)
        return None

    if session.stop_requested:
        await _on_stopped(session, deps, target)
        return None
    session.rate_limit.on_success()
    return response


async def _on_crash(
    session: Session,
    error: Exception,
    deps: FlowDeps,
    target: ReplyTarget,
    lease: _Lease,
    retries_left: int,
) -> str | None:
    if retries_left <= 0:
        log.error("Agent crashed again, giving up", session_key=session.session_key, error=str(error))
        await _notice(deps, target, f"Agent crashed again: {str(error)[:200]}")
        return None

    log.warning("Agent crashed, retrying", session_key=session.session_key, error=str(error))
    killed = await session.kill()
    session.clear_stop_requested()
    session.restore_steering(killed.messages)
    await _notice(deps, target, "Agent crashed. Starting a fresh session and retrying...")

    lease.renew()
    return await _send(session, session.last_message or "", deps, target, lease, crash_retries=retries_left - 1)


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


async def deliver_response(session: Session, response: str, deps: FlowDeps, target: ReplyTarget) -> None:
    """Send agent output, attaching any choice it asked the user to make."""
    extracted = extract_user_choice(response)
    text = extracted.text_without_choice if extracted.found else response
    await _record(deps, session, "assistant", response)

    if text.strip():
        await deps.outbox.text(target.chat_id, text, reply_to=target.message_id, thread_id=target.thread_id)

    if extracted.found:
        state = ChoiceState(
            kind="single" if extracted.choice is not None else "multi",
            form_id=uuid.uuid4().hex[:8],
            choice=extracted.choice,
            choices=extracted.choices,
        )
        receipt = await deps.outbox.send(build_choice_payload(target.chat_id, state, target.thread_id))
        if receipt is not None and receipt.message_id:
            state = replace(state, message_ids=[receipt.message_id])
        session.set_choice(state)

    for threshold in session.pop_context_warnings():
        await _notice(deps, target, f"Context window {round(threshold * 100)}% full.")
    if session.consume_save_required():
        session.persist()
        await _notice(deps, target, "Context window nearly full. Session saved; consider /new soon.")


async def _auto_continue(session: Session, deps: FlowDeps, target: ReplyTarget) -> None:
    max_rounds = deps.config.steering.max_auto_continue_rounds
    rounds = 0
    while session.has_steering_messages() and rounds < max_rounds and not session.stop_requested:
        rounds += 1
        messages = session.extract_steering()
        content = format_steering(messages) or ""
        log.info("Auto-continuing with buffered messages", session_key=session.session_key, round=rounds, count=len(messages))
        generation = session.generation
        try:
            response = await session.send_message_streaming(f"{AUTO_CONTINUE_HEADER}\n{content}")
        except Exception as e:
            if session.is_guard_current(generation):
                session.restore_steering(messages)
            if is_abort_error(e) or isinstance(e, QueryCancelledError):
                if session.is_guard_current(generation):
                    await _on_stopped(session, deps, target)
            else:
                log.error("Auto-continue failed", session_key=session.session_key, round=rounds, error=str(e))
                await _notice(deps, target, f"Follow-up failed: {str(e)[:200]}")
            return
        if session.stop_requested:
            await _on_stopped(session, deps, target)
            return
        await deliver_response(session, response, deps, target)
        await deps.sleep(deps.config.steering.settle_seconds)

    if session.stop_requested:
        await _on_stopped(session, deps, target)
        return
    if rounds >= max_rounds and session.has_steering_messages():
        remaining = session.steering_count()
        log.warning("Auto-continue limit reached", session_key=session.session_key, rounds=rounds, remaining=remaining)
        await _notice(deps, target, f"{remaining} message(s) still queued. Send any message to continue.")


async def run_query_flow(session: Session, message: str, deps: FlowDeps, target: ReplyTarget) -> str | None:
    """Run a user message through the session and deliver everything it produces."""
    session.last_message = message
    lease = _Lease(session)
    await deps.outbox.react(target.chat_id, target.message_id, Reaction.PROCESSING)
    await _record(deps, session, "user", message)
    try:
        response = await _send(session, message, deps, target, lease)
        if response is None:
            return None
        await deliver_response(session, response, deps, target)
        # A kill from elsewhere drops the lease; leave the buffer to the next turn.
        if session.is_processing:
            await _auto_continue(session, deps, target)
        await deps.outbox.react(target.chat_id, target.message_id, Reaction.COMPLETE)
        return response
    finally:
        lease.release()
