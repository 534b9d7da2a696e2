"""Best-effort recovery of a repair proposal from agent stdout."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\[{].*?[\]}])\s*```", re.DOTALL | re.IGNORECASE)


@dataclass(slots=True)
class ParsedProposal:
    """Raw task list and explanation pulled out of agent output."""

    tasks: list[Any]
    explanation: str
    parser: str


def parse_proposal(stdout_text: str) -> ParsedProposal | None:
    """Find `{"tasks": [...], "explanation": "..."}` (or a bare task list) in `stdout_text`."""

    text = stdout_text.strip()
    if not text:
        return None

    direct = _try_load(text)
    if direct is not None:
        return _normalize(direct, parser="direct_json")

    for fenced in _FENCED_JSON.finditer(text):
        payload = _try_load(fenced.group(1))
        if payload is not None:
            normalized = _normalize(payload, parser="fenced_json")
            if normalized is not None:
                return normalized

    for opener, closer in (("{", "}"), ("[", "]")):
        start = text.find(opener)
        end = text.rfind(closer)
        if start == -1 or end <= start:
            continue
        payload = _try_load(text[start : end + 1])
        if payload is not None:
            normalized = _normalize(payload, parser="outermost_brackets")
            if normalized is not None:
                return normalized
    return None


def _try_load(raw: str) -> dict[str, Any] | list[Any] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, (dict, list)):
        return None
    return parsed


def _normalize(payload: dict[str, Any] | list[Any], *, parser: str) -> ParsedProposal | None:
    if isinstance(payload, list):
        return ParsedProposal(tasks=payload, explanation="", parser=parser)
    tasks = payload.get("tasks")
    if not isinstance(tasks, list):
        return None
    explanation = payload.get("explanation")
    return ParsedProposal(
        tasks=tasks,
        explanation=explanation.strip() if isinstance(explanation, str) else "",
        parser=parser,
    )
