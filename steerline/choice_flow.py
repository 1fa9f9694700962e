"""Single and multi-question choice negotiation state machine."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Literal

from steerline.exceptions import ChoiceTransitionError

ChoiceKind = Literal["single", "multi"]

DIRECT_CHOICE_ID = "__direct__"
DIRECT_INPUT_TTL_SECONDS = 5 * 60


@dataclass(frozen=True)
class ChoiceOption:
    id: str
    label: str
    description: str = ""


@dataclass(frozen=True)
class ChoiceQuestion:
    id: str
    question: str
    options: list[ChoiceOption] = field(default_factory=list)
    context: str = ""


@dataclass(frozen=True)
class UserChoice:
    """A single question offered to the user."""

    question: str
    options: list[ChoiceOption] = field(default_factory=list)
    context: str = ""


@dataclass(frozen=True)
class UserChoices:
    """A multi-question form."""

    questions: list[ChoiceQuestion] = field(default_factory=list)
    title: str = ""
    description: str = ""


@dataclass(frozen=True)
class Selection:
    choice_id: str
    label: str


@dataclass(frozen=True)
class ChoiceState:
    """Pending choice attached to a session.

    ``message_ids`` holds every chat message that rendered the choice so
    stale button presses on older messages can be rejected.
    """

    kind: ChoiceKind
    message_ids: list[int] = field(default_factory=list)
    form_id: str = ""
    choice: UserChoice | None = None
    choices: UserChoices | None = None
    selections: dict[str, Selection] = field(default_factory=dict)

    def is_complete(self) -> bool:
        if self.kind != "multi" or self.choices is None:
            return False
        return all(q.id in self.selections for q in self.choices.questions)


@dataclass(frozen=True)
class DirectInputState:
    """The user asked to type a free-text answer instead of pressing a button."""

    kind: ChoiceKind
    message_id: int
    created_at: float
    form_id: str = ""
    question_id: str | None = None


# Selection inputs


@dataclass(frozen=True)
class SingleOption:
    option_id: str


@dataclass(frozen=True)
class MultiOption:
    question_id: str
    option_id: str


@dataclass(frozen=True)
class MultiDirectInput:
    question_id: str
    label: str


ChoiceSelection = SingleOption | MultiOption | MultiDirectInput


# Results


@dataclass(frozen=True)
class ChoicePending:
    selected_label: str
    question_text: str
    next_state: ChoiceState
    status: Literal["pending"] = "pending"


@dataclass(frozen=True)
class ChoiceResolved:
    label: str
    status: Literal["resolved"] = "resolved"


ChoiceResult = ChoicePending | ChoiceResolved


def _require_state(choice_state: ChoiceState | None) -> ChoiceState:
    if choice_state is None:
        raise ChoiceTransitionError("CHOICE_MISSING_STATE", "Choice state does not exist.")
    return choice_state


def build_answer_summary(choice_state: ChoiceState) -> str:
    if choice_state.choices is None:
        raise ChoiceTransitionError("CHOICE_MISSING_DATA", "Form data not found.")
    lines = []
    for question in choice_state.choices.questions:
        selection = choice_state.selections.get(question.id)
        if selection is None:
            continue
        lines.append(f"{question.question}: {selection.label}")
    return "\n".join(lines)


def apply_choice_selection(
    choice_state: ChoiceState | None,
    selection: ChoiceSelection,
) -> ChoiceResult:
    """Apply one answer and report whether the negotiation is finished.

    The input state is never mutated; a pending result carries the state the
    caller must store back on the session.
    """
    state = _require_state(choice_state)

    if state.kind == "single":
        if not isinstance(selection, SingleOption):
            raise ChoiceTransitionError(
                "CHOICE_INVALID_MODE",
                "Single choice state only accepts single option selections.",
            )
        if state.choice is None:
            raise ChoiceTransitionError("CHOICE_MISSING_DATA", "Choice data not found.")
        for option in state.choice.options:
            if option.id == selection.option_id:
                return ChoiceResolved(label=option.label)
        raise ChoiceTransitionError("CHOICE_INVALID_OPTION", "Invalid option.")

    if isinstance(selection, SingleOption):
        raise ChoiceTransitionError(
            "CHOICE_INVALID_MODE",
            "Multi-form state requires question-scoped selection.",
        )
    if state.choices is None:
        raise ChoiceTransitionError("CHOICE_MISSING_DATA", "Form data not found.")

    question = next((q for q in state.choices.questions if q.id == selection.question_id), None)
    if question is None:
        raise ChoiceTransitionError("CHOICE_INVALID_QUESTION", "Question not found.")

    if isinstance(selection, MultiOption):
        option = next((o for o in question.options if o.id == selection.option_id), None)
        if option is None:
            raise ChoiceTransitionError("CHOICE_INVALID_OPTION", "Invalid option.")
        recorded = Selection(choice_id=option.id, label=option.label)
    else:
        recorded = Selection(choice_id=DIRECT_CHOICE_ID, label=selection.label)

    next_state = replace(state, selections={**state.selections, question.id: recorded})
    if not next_state.is_complete():
        return ChoicePending(
            selected_label=recorded.label,
            question_text=question.question,
            next_state=next_state,
        )
    return ChoiceResolved(label=f"Answered all questions:\n{build_answer_summary(next_state)}")


def create_pending_direct_input(
    choice_state: ChoiceState | None,
    message_id: int,
    created_at: float,
    question_id: str | None = None,
) -> DirectInputState:
    state = _require_state(choice_state)
    return DirectInputState(
        kind=state.kind,
        form_id=state.form_id,
        question_id=question_id,
        message_id=message_id,
        created_at=created_at,
    )


def is_direct_input_expired(
    state: DirectInputState,
    now: float,
    ttl_seconds: float = DIRECT_INPUT_TTL_SECONDS,
) -> bool:
    return now - state.created_at > ttl_seconds


def parse_text_choice(choice_state: ChoiceState | None, text: str) -> SingleOption | None:
    """Map a bare numeric reply ("2") onto the Nth option of a single choice."""
    if choice_state is None or choice_state.kind != "single" or choice_state.choice is None:
        return None
    raw = str(text or "").strip()
    if not raw.isdigit():
        return None
    index = int(raw) - 1
    options = choice_state.choice.options
    if index < 0 or index >= len(options):
        return None
    return SingleOption(option_id=options[index].id)


def question_text_for(choice_state: ChoiceState | None, question_id: str | None) -> str:
    if choice_state is None:
        return ""
    if choice_state.kind == "single" and choice_state.choice is not None:
        return choice_state.choice.question
    if choice_state.choices is not None and question_id:
        for question in choice_state.choices.questions:
            if question.id == question_id:
                return question.question
    return ""
