"""Button callbacks: choice keyboards and lost-message recovery."""

from __future__ import annotations

import hashlib
import re
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from steerline.channel import Button, ChoicePayload, InboundMessage
from steerline.choice_flow import (
    ChoicePending,
    ChoiceState,
    MultiOption,
    SingleOption,
    apply_choice_selection,
    create_pending_direct_input,
    question_text_for,
)
from steerline.exceptions import ChoiceTransitionError
from steerline.logging import get_logger
from steerline.recovery import RecoveryPolicy, build_recovery_prompt
from steerline.session import Session
from steerline.steering import SteeringMessage

if TYPE_CHECKING:
    from steerline.inbound import InboundDispatcher

log = get_logger(__name__)

MAX_CALLBACK_BYTES = 64
CHOICE_PREFIX = "c"
RECOVERY_PREFIX = "lost"
DIRECT_INPUT_TOKEN = "__direct"
MAX_BUTTON_LABEL = 60

FORM_EXPIRED_NOTICE = "Form data expired. Please ask again."

RECOVERY_BUTTONS: list[tuple[str, RecoveryPolicy]] = [
    ("Resend", RecoveryPolicy.RESEND),
    ("Discard", RecoveryPolicy.DISCARD),
    ("With context", RecoveryPolicy.CONTEXT),
    ("With history", RecoveryPolicy.CONTEXT_HISTORY),
]

_UNSAFE_ID = re.compile(r"[^A-Za-z0-9_\-.]")


# ---------------------------------------------------------------------------
# Callback data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChoiceCallback:
    form_key: str
    option_id: str
    question_id: str | None = None

    @property
    def is_direct(self) -> bool:
        return self.option_id == DIRECT_INPUT_TOKEN


@dataclass(frozen=True)
class RecoveryCallback:
    session_hash: str
    policy: RecoveryPolicy


def compress_session_key(session_key: str) -> str:
    return hashlib.sha1(session_key.encode("utf-8")).hexdigest()[:8]


def safe_id(raw: str) -> str:
    return _UNSAFE_ID.sub("_", str(raw))[:16] or "_"


def _checked(data: str) -> str:
    if len(data.encode("utf-8")) > MAX_CALLBACK_BYTES:
        raise ValueError(f"Callback data exceeds {MAX_CALLBACK_BYTES} bytes: {data!r}")
    return data


def choice_callback_data(form_id: str, option_id: str, question_id: str | None = None) -> str:
    parts = [CHOICE_PREFIX, form_id[:8]]
    if question_id is not None:
        parts.append(safe_id(question_id))
    parts.append(option_id if option_id == DIRECT_INPUT_TOKEN else safe_id(option_id))
    return _checked(":".join(parts))


def recovery_callback_data(session_key: str, policy: RecoveryPolicy) -> str:
    return _checked(f"{RECOVERY_PREFIX}:{compress_session_key(session_key)}:{policy.value}")


def parse_callback_data(data: str | None) -> ChoiceCallback | RecoveryCallback | None:
    """Parse button data; None for anything malformed or unknown."""
    parts = str(data or "").split(":")
    if len(parts) == 3 and parts[0] == RECOVERY_PREFIX:
        try:
            policy = RecoveryPolicy(parts[2])
        except ValueError:
            return None
        return RecoveryCallback(session_hash=parts[1], policy=policy)
    if parts[0] != CHOICE_PREFIX or not all(parts[1:]):
        return None
    if len(parts) == 3:
        return ChoiceCallback(form_key=parts[1], option_id=parts[2])
    if len(parts) == 4:
        return ChoiceCallback(form_key=parts[1], question_id=parts[2], option_id=parts[3])
    return None


# ---------------------------------------------------------------------------
# Keyboards
# ---------------------------------------------------------------------------


def _label(text: str) -> str:
    return text if len(text) <= MAX_BUTTON_LABEL else text[: MAX_BUTTON_LABEL - 3] + "..."


def build_choice_payload(chat_id: int, state: ChoiceState, thread_id: int | None = None) -> ChoicePayload:
    rows: list[list[Button]] = []
    lines: list[str] = []
    if state.kind == "single" and state.choice is not None:
        lines.append(state.choice.question)
        if state.choice.context:
            lines.append(state.choice.context)
        for idx, option in enumerate(state.choice.options, start=1):
            lines.append(f"{idx}. {option.label}" + (f" - {option.description}" if option.description else ""))
            rows.append([Button(_label(option.label), choice_callback_data(state.form_id, option.id))])
        rows.append([Button("Direct input", choice_callback_data(state.form_id, DIRECT_INPUT_TOKEN))])
    elif state.choices is not None:
        if state.choices.title:
            lines.append(state.choices.title)
        if state.choices.description:
            lines.append(state.choices.description)
        for question in state.choices.questions:
            lines.append(f"\n{question.question}")
            for option in question.options:
                rows.append([Button(_label(option.label), choice_callback_data(state.form_id, option.id, question.id))])
            rows.append(
                [Button(f"Direct input: {_label(question.question)}", choice_callback_data(state.form_id, DIRECT_INPUT_TOKEN, question.id))]
            )
    return ChoicePayload(chat_id=chat_id, text="\n".join(lines).strip() or "Choose an option:", buttons=rows, thread_id=thread_id)


def build_recovery_payload(
    chat_id: int,
    session_key: str,
    messages: list[SteeringMessage],
    thread_id: int | None = None,
) -> ChoicePayload:
    rows = [[Button(label, recovery_callback_data(session_key, policy))] for label, policy in RECOVERY_BUTTONS]
    return ChoicePayload(chat_id=chat_id, text=build_recovery_prompt(messages), buttons=rows, thread_id=thread_id)


# ---------------------------------------------------------------------------
# Handling
# ---------------------------------------------------------------------------


async def handle_callback(dispatcher: InboundDispatcher, session: Session, inbound: InboundMessage) -> None:
    outbox = dispatcher.outbox
    if inbound.callback_id:
        try:
            await outbox.channel.answer_callback(inbound.callback_id)
        except Exception as e:
            log.warning("Callback answer failed", error=str(e))

    parsed = parse_callback_data(inbound.callback_data)
    if parsed is None:
        log.debug("Ignoring unknown callback", data=inbound.callback_data)
        return
    if isinstance(parsed, RecoveryCallback):
        await _handle_recovery(dispatcher, session, inbound, parsed)
    else:
        await _handle_choice(dispatcher, session, inbound, parsed)


async def _handle_recovery(
    dispatcher: InboundDispatcher,
    session: Session,
    inbound: InboundMessage,
    parsed: RecoveryCallback,
) -> None:
    outbox = dispatcher.outbox
    if parsed.session_hash != compress_session_key(session.session_key):
        log.warning("Recovery callback for another session", session_key=session.session_key)
        return

    pending = session.recovery.peek_pending()
    if pending is None:
        await outbox.notice(inbound.chat_id, "Nothing to recover.", thread_id=inbound.thread_id)
        return

    history = None
    if parsed.policy == RecoveryPolicy.CONTEXT_HISTORY and dispatcher.history is not None:
        history = await dispatcher.history.recent(
            session.session_key,
            limit=dispatcher.config.recovery.history_limit,
        )
    messages = session.apply_recovery(parsed.policy, history) or []
    await outbox.delete(inbound.chat_id, pending.prompt_message_id or inbound.message_id)

    count = len(messages)
    if parsed.policy == RecoveryPolicy.RESEND:
        text = f"{count} message(s) will be sent with your next message."
    elif parsed.policy == RecoveryPolicy.DISCARD:
        text = f"{count} message(s) discarded."
    elif parsed.policy == RecoveryPolicy.CONTEXT:
        text = f"{count} message(s) will be added as context to your next message."
    else:
        text = f"{count} message(s) and recent history will be added as context to your next message."
    await outbox.notice(inbound.chat_id, text, thread_id=inbound.thread_id)


def _match_option_id(options_ids: list[str], raw: str) -> str | None:
    for option_id in options_ids:
        if safe_id(option_id) == raw:
            return option_id
    return None


async def _handle_choice(
    dispatcher: InboundDispatcher,
    session: Session,
    inbound: InboundMessage,
    parsed: ChoiceCallback,
) -> None:
    outbox = dispatcher.outbox
    state = session.choice_state
    if state is None or state.form_id[:8] != parsed.form_key:
        await outbox.notice(inbound.chat_id, FORM_EXPIRED_NOTICE, thread_id=inbound.thread_id)
        return
    if inbound.message_id and state.message_ids and inbound.message_id not in state.message_ids:
        await outbox.notice(inbound.chat_id, FORM_EXPIRED_NOTICE, thread_id=inbound.thread_id)
        return

    question_id = _resolve_question_id(state, parsed.question_id)

    if parsed.is_direct:
        pending = create_pending_direct_input(
            state,
            message_id=inbound.message_id or 0,
            created_at=time.time(),
            question_id=question_id,
        )
        session.set_pending_direct_input(pending)
        question = question_text_for(state, question_id)
        prompt = f"Type your answer for: {question}" if question else "Type your answer:"
        await outbox.notice(inbound.chat_id, prompt, thread_id=inbound.thread_id)
        return

    try:
        if state.kind == "single":
            ids = [o.id for o in state.choice.options] if state.choice else []
            option_id = _match_option_id(ids, parsed.option_id) or parsed.option_id
            result = apply_choice_selection(state, SingleOption(option_id=option_id))
        else:
            ids = []
            if state.choices is not None and question_id:
                for question in state.choices.questions:
                    if question.id == question_id:
                        ids = [o.id for o in question.options]
            option_id = _match_option_id(ids, parsed.option_id) or parsed.option_id
            result = apply_choice_selection(
                state,
                MultiOption(question_id=question_id or parsed.question_id or "", option_id=option_id),
            )
    except ChoiceTransitionError as e:
        log.warning("Choice callback rejected", code=e.code, error=str(e))
        session.clear_choice()
        await outbox.notice(inbound.chat_id, FORM_EXPIRED_NOTICE, thread_id=inbound.thread_id)
        return

    if isinstance(result, ChoicePending):
        session.update_choice(result.next_state)
        await outbox.notice(
            inbound.chat_id,
            f"{result.question_text}: {result.selected_label}",
            thread_id=inbound.thread_id,
        )
        return

    session.clear_choice()
    await outbox.delete(inbound.chat_id, inbound.message_id)
    await dispatcher.run_query(session, inbound, result.label)


def _resolve_question_id(state: ChoiceState, raw: str | None) -> str | None:
    if raw is None or state.choices is None:
        return raw
    for question in state.choices.questions:
        if safe_id(question.id) == raw:
            return question.id
    return raw
