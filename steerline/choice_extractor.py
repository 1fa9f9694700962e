"""Lenient extraction of interactive choices from provider output text.

Models announce a choice by embedding a JSON object in their reply, either in
a fenced ```json block or inline. Three shapes are accepted:

* ``{"type": "user_choice", "question": ..., "choices"|"options": [...]}``
* ``{"type": "user_choices", "title": ..., "questions": [...]}``
* ``{"question": ..., "choices": [{"question": ..., "options": [...]}, ...]}``
  (a "choice group"; a group with one question collapses to a single choice)

Parsing is best-effort and never raises; anything unrecognized is left in the
text untouched.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from steerline.choice_flow import ChoiceOption, ChoiceQuestion, UserChoice, UserChoices
from steerline.logging import get_logger

log = get_logger(__name__)

_FENCED_JSON = re.compile(r"```json\s*\n?(.*?)\n?```", re.DOTALL)
_RAW_JSON_START = re.compile(r'\{\s*"(?:type|question)"\s*:')
_decoder = json.JSONDecoder()


@dataclass(frozen=True)
class ExtractedChoice:
    choice: UserChoice | None
    choices: UserChoices | None
    text_without_choice: str

    @property
    def found(self) -> bool:
        return self.choice is not None or self.choices is not None


def _options(raw: Any) -> list[ChoiceOption]:
    options: list[ChoiceOption] = []
    if not isinstance(raw, list):
        return options
    for idx, item in enumerate(raw):
        if isinstance(item, dict):
            label = str(item.get("label") or item.get("text") or "").strip()
            if not label:
                continue
            option_id = str(item.get("id") or idx + 1)
            options.append(
                ChoiceOption(id=option_id, label=label, description=str(item.get("description") or ""))
            )
        elif isinstance(item, str) and item.strip():
            options.append(ChoiceOption(id=str(idx + 1), label=item.strip()))
    return options


def _question(raw: dict[str, Any], fallback_id: str) -> ChoiceQuestion:
    return ChoiceQuestion(
        id=str(raw.get("id") or fallback_id),
        question=str(raw.get("question") or ""),
        options=_options(raw.get("options") or raw.get("choices")),
        context=str(raw.get("context") or ""),
    )


def normalize_choice_payload(parsed: Any) -> tuple[UserChoice | None, UserChoices | None]:
    if not isinstance(parsed, dict):
        return None, None
    kind = parsed.get("type")

    if kind == "user_choices" and isinstance(parsed.get("questions"), list):
        questions = [
            _question(q, f"q{idx + 1}")
            for idx, q in enumerate(parsed["questions"])
            if isinstance(q, dict)
        ]
        if not questions:
            return None, None
        return None, UserChoices(
            questions=questions,
            title=str(parsed.get("title") or ""),
            description=str(parsed.get("description") or ""),
        )

    if kind == "user_choice":
        raw_options = parsed.get("choices") or parsed.get("options")
        if isinstance(raw_options, list):
            return UserChoice(
                question=str(parsed.get("question") or ""),
                options=_options(raw_options),
                context=str(parsed.get("context") or ""),
            ), None

    group = parsed.get("choices")
    if parsed.get("question") and isinstance(group, list) and kind in (None, "user_choice_group"):
        first = group[0] if group else None
        if isinstance(first, dict) and (
            first.get("type") == "user_choice" or first.get("options") or first.get("choices")
        ):
            questions = [
                _question({**item, "id": None}, f"q{idx + 1}")
                for idx, item in enumerate(group)
                if isinstance(item, dict)
            ]
            if len(questions) == 1:
                only = questions[0]
                return UserChoice(question=only.question, options=only.options, context=only.context), None
            return None, UserChoices(
                questions=questions,
                title=str(parsed.get("question") or ""),
                description=str(parsed.get("context") or ""),
            )

    return None, None


def extract_user_choice(text: str) -> ExtractedChoice:
    """Find the first choice payload in ``text``."""
    body = text or ""

    for match in _FENCED_JSON.finditer(body):
        try:
            parsed = json.loads(match.group(1).strip())
        except json.JSONDecodeError:
            continue
        choice, choices = normalize_choice_payload(parsed)
        if choice or choices:
            remaining = body.replace(match.group(0), "", 1).strip()
            return ExtractedChoice(choice=choice, choices=choices, text_without_choice=remaining)

    for match in _RAW_JSON_START.finditer(body):
        try:
            parsed, _end = _decoder.raw_decode(body, match.start())
        except json.JSONDecodeError:
            continue
        choice, choices = normalize_choice_payload(parsed)
        if choice or choices:
            return ExtractedChoice(
                choice=choice,
                choices=choices,
                text_without_choice=body[: match.start()].strip(),
            )

    if "user_choice" in body:
        log.debug("Choice marker present but no payload parsed", chars=len(body))
    return ExtractedChoice(choice=None, choices=None, text_without_choice=body)
