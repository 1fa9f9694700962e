"""Inbound message dispatch: ordering, choices, interrupts, steering, queries."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

from structlog.contextvars import bound_contextvars

from steerline.callbacks import FORM_EXPIRED_NOTICE, build_recovery_payload, handle_callback
from steerline.channel import Channel, InboundMessage, Outbox, Reaction
from steerline.chat_history import ChatHistory
from steerline.choice_flow import (
    ChoicePending,
    MultiDirectInput,
    apply_choice_selection,
    is_direct_input_expired,
    parse_text_choice,
)
from steerline.config import Config, get_config
from steerline.exceptions import ChoiceTransitionError
from steerline.execution_queue import ConversationSequencer, lane_key
from steerline.logging import get_logger
from steerline.order_policy import INTERRUPT_SIGIL, OrderPolicy, thread_key
from steerline.query_flow import FlowDeps, ReplyTarget, run_query_flow
from steerline.rate_limit import UsageSource
from steerline.recovery import RecoveryPolicy
from steerline.session import Session, SessionRegistry
from steerline.steering import SteeringMessage

log = get_logger(__name__)

HELP_TEXT = (
    "Send a message to talk to the agent. Messages sent while it is working are "
    "delivered to it as it goes.\n"
    "Start a message with ! to interrupt the current task.\n\n"
    "/new - start a fresh session\n"
    "/stop - stop the current task\n"
    "/status - show session status\n"
    "/retry - resend the last message"
)

CONTEXT_RECOVERED_NOTICE = "Previous messages added as context."
INPUT_EXPIRED_NOTICE = "Input expired. Please select again."
ANSWER_RECORDED_NOTICE = "Answer recorded. Continue with other questions."
STOPPED_NOTICE = "Stopped."
QUEUE_FULL_NOTICE = "Message queue full: oldest buffered message dropped."
GENERIC_ERROR_NOTICE = "Something went wrong while handling your message."


async def wait_until(predicate: Callable[[], bool], timeout_seconds: float, interval: float = 0.05) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max(0.0, timeout_seconds)
    while not predicate():
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(interval)
    return True


class InboundDispatcher:
    """Routes normalized inbound messages to their session."""

    def __init__(
        self,
        registry: SessionRegistry,
        channel: Channel,
        *,
        config: Config | None = None,
        history: ChatHistory | None = None,
        usage_source: UsageSource | None = None,
        order_policy: OrderPolicy | None = None,
        sequencer: ConversationSequencer | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.config = config or get_config()
        self.history = history
        self.outbox = Outbox(channel)
        self.order_policy = order_policy or OrderPolicy()
        self.sequencer = sequencer
        self.clock = clock
        self.deps = FlowDeps(
            outbox=self.outbox,
            config=self.config,
            history=history,
            usage_source=usage_source,
            clock=clock,
        )

    async def handle(self, inbound: InboundMessage) -> None:
        """Handle one inbound message; never raises."""
        session = self.registry.get_or_create(inbound.identity)
        with bound_contextvars(session_key=session.session_key):
            try:
                await self._dispatch(session, inbound)
            except Exception as e:
                log.exception("Inbound handling failed", error=str(e))
                await self.outbox.notice(inbound.chat_id, GENERIC_ERROR_NOTICE, thread_id=inbound.thread_id)

    async def run_query(self, session: Session, inbound: InboundMessage, text: str) -> str | None:
        """Start a query, or buffer ``text`` as steering when one is in flight."""
        if session.is_running:
            await self._buffer_steering(session, inbound, text)
            return None
        target = ReplyTarget(chat_id=inbound.chat_id, message_id=inbound.message_id, thread_id=inbound.thread_id)
        return await run_query_flow(session, text, self.deps, target)

    async def _notice(self, inbound: InboundMessage, text: str) -> None:
        await self.outbox.notice(inbound.chat_id, text, thread_id=inbound.thread_id)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, session: Session, inbound: InboundMessage) -> None:
        session.release_if_stuck()
        session.last_activity = self.clock()

        if inbound.is_callback:
            await handle_callback(self, session, inbound)
            return

        decision = self.order_policy.evaluate(
            thread_key(inbound.chat_id, inbound.thread_id),
            inbound.timestamp_ms,
            inbound.text,
        )
        if not decision.accepted:
            return

        if inbound.is_command and await self._handle_command(session, inbound):
            return

        text = inbound.text
        if not inbound.is_interrupt and session.recovery.has_pending():
            await self._resolve_recovery_as_context(session, inbound)

        if session.pending_direct_input is not None and not inbound.is_interrupt:
            await self._handle_direct_input(session, inbound, text)
            return

        selection = parse_text_choice(session.choice_state, text)
        if selection is not None and not inbound.is_interrupt:
            label = next(o.label for o in session.choice_state.choice.options if o.id == selection.option_id)
            session.clear_choice()
            await self.run_query(session, inbound, label)
            return

        if inbound.is_interrupt:
            remainder = await self._interrupt(session, inbound)
            if remainder is None:
                return
            text = remainder

        if session.is_processing:
            if inbound.is_interrupt:
                await wait_until(lambda: not session.is_processing, self.config.session.steering_idle_wait_seconds)
            if session.is_processing:
                await self._buffer_steering(session, inbound, text)
                return

        await self.run_query(session, inbound, text)

    async def _resolve_recovery_as_context(self, session: Session, inbound: InboundMessage) -> None:
        pending = session.recovery.peek_pending()
        if pending is None:
            return
        session.apply_recovery(RecoveryPolicy.CONTEXT)
        if pending.prompt_message_id:
            await self.outbox.delete(int(pending.chat_id or inbound.chat_id), pending.prompt_message_id)
        await self._notice(inbound, CONTEXT_RECOVERED_NOTICE)

    async def _handle_direct_input(self, session: Session, inbound: InboundMessage, text: str) -> None:
        state = session.take_direct_input()
        if state is None:
            return
        if is_direct_input_expired(state, self.clock(), self.config.choice.direct_input_ttl_seconds):
            await self._notice(inbound, INPUT_EXPIRED_NOTICE)
            return
        answer = text.strip()

        if state.kind == "single":
            session.clear_choice()
            await self.run_query(session, inbound, answer)
            return

        choice_state = session.choice_state
        try:
            if choice_state is None or choice_state.form_id != state.form_id:
                raise ChoiceTransitionError("CHOICE_MISSING_STATE", "Choice state does not exist.")
            result = apply_choice_selection(
                choice_state,
                MultiDirectInput(question_id=state.question_id or "", label=answer),
            )
        except ChoiceTransitionError as e:
            log.warning("Direct input rejected", code=e.code)
            session.clear_choice()
            await self._notice(inbound, FORM_EXPIRED_NOTICE)
            return

        if isinstance(result, ChoicePending):
            session.update_choice(result.next_state)
            await self._notice(inbound, ANSWER_RECORDED_NOTICE)
            return
        session.clear_choice()
        await self.run_query(session, inbound, result.label)

    async def _interrupt(self, session: Session, inbound: InboundMessage) -> str | None:
        """Stop the running query; returns the text left to send, if any."""
        remainder = inbound.text.lstrip()[len(INTERRUPT_SIGIL):].strip()

        if session.is_running:
            if not session.begin_interrupt():
                log.info("Interrupt already in flight, waiting")
                await wait_until(lambda: not session.is_interrupting, self.config.session.interrupt_wait_seconds)
            else:
                try:
                    session.mark_interrupt()
                    if await session.stop() == "pending":
                        # Let the flow between queries see the stop and let go of its lease.
                        await wait_until(
                            lambda: not session.is_processing,
                            self.config.session.interrupt_wait_seconds,
                        )
                finally:
                    session.clear_stop_requested()
                    session.end_interrupt()
                await self.outbox.react(inbound.chat_id, inbound.message_id, Reaction.INTERRUPTED)

        if remainder:
            return remainder

        if session.has_steering_messages():
            await self.open_recovery(session, inbound, session.extract_steering())
        else:
            await self._notice(inbound, STOPPED_NOTICE)
        return None

    async def _buffer_steering(self, session: Session, inbound: InboundMessage, text: str) -> None:
        if not inbound.message_id:
            await self._notice(inbound, "Message could not be queued. Please send it again.")
            return
        evicted = session.add_steering(text, inbound.message_id)
        log.info("Buffered steering message", message_id=inbound.message_id, count=session.steering_count())
        if evicted:
            await self._notice(inbound, QUEUE_FULL_NOTICE)
        else:
            await self.outbox.react(inbound.chat_id, inbound.message_id, Reaction.BUFFERED)

    async def open_recovery(self, session: Session, inbound: InboundMessage, messages: list[SteeringMessage]) -> None:
        """Offer the user a choice for messages that would otherwise be lost."""
        if not messages:
            return
        session.open_recovery(messages, chat_id=inbound.chat_id)
        receipt = await self.outbox.send(
            build_recovery_payload(inbound.chat_id, session.session_key, messages, inbound.thread_id)
        )
        if receipt is not None and receipt.message_id:
            session.open_recovery([], prompt_message_id=receipt.message_id, chat_id=inbound.chat_id)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _handle_command(self, session: Session, inbound: InboundMessage) -> bool:
        """Run a built-in command; False lets unknown commands reach the agent."""
        command = inbound.text.strip().split()[0].lower().split("@", 1)[0]

        if command in ("/start", "/help"):
            await self._notice(inbound, HELP_TEXT)
        elif command == "/new":
            result = await self.registry.kill(session.identity)
            dropped = self.sequencer.clear_lane(lane_key(session.identity)) if self.sequencer is not None else 0
            await self._notice(inbound, "Session cleared. Next message starts fresh.")
            if dropped:
                await self._notice(inbound, f"{dropped} waiting message(s) discarded.")
            await self.open_recovery(session, inbound, result.messages)
        elif command == "/stop":
            # The stopped flow reports itself.
            if not await session.stop():
                await self._notice(inbound, "Nothing to stop.")
        elif command == "/status":
            await self._notice(inbound, "\n".join(session.status_lines()))
        elif command == "/retry":
            if session.is_processing:
                await self._notice(inbound, "A query is already running.")
            elif not session.last_message:
                await self._notice(inbound, "Nothing to retry.")
            else:
                await self.run_query(session, inbound, session.last_message)
        else:
            return False
        log.info("Handled command", command=command)
        return True
