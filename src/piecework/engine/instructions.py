"""Default instruction builder for movement and status-judgment prompts."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from piecework.engine.models import EngineRunState, Movement, Piece, Rule
from piecework.engine.transitions import condition_text

PREVIOUS_RESPONSE_MAX_CHARS = 4_000


@dataclass(slots=True)
class InstructionBuilder:
    """Render plain-markdown prompts; rendering is deliberately minimal."""

    piece: Piece

    def build(
        self,
        *,
        movement: Movement,
        task: str,
        state: EngineRunState,
        retry_note: str | None = None,
    ) -> str:
        sections = [
            "## Task",
            task.strip(),
        ]
        if retry_note:
            sections += ["", "## Retry note", retry_note.strip()]

        names = self.piece.movement_names()
        position = names.index(movement.name) + 1 if movement.name in names else 0
        sections += [
            "",
            "## Progress",
            f"Piece: {self.piece.name}",
            f"Movement: {movement.name} ({position}/{len(names)})",
            f"Iteration: {state.global_iteration}/{self.piece.max_movements} "
            f"(movement iteration {state.per_movement_iteration.get(movement.name, 0)})",
        ]

        previous = state.last_response
        if previous is not None and previous.content:
            sections += [
                "",
                "## Previous response",
                _truncate(previous.content, PREVIOUS_RESPONSE_MAX_CHARS),
            ]
        if state.user_inputs:
            sections += ["", "## User inputs"]
            sections += [f"- {entry}" for entry in state.user_inputs]
        if movement.instruction.strip():
            sections += ["", "## Instructions", movement.instruction.strip()]

        tag_rules = [
            (index, rule) for index, rule in enumerate(movement.rules) if not rule.is_aggregate
        ]
        if tag_rules:
            sections += ["", *_status_criteria(movement.name, tag_rules)]
        return "\n".join(sections) + "\n"

    def build_status_judgment(
        self,
        *,
        movement: Movement,
        candidates: Sequence[tuple[int, Rule]],
        content: str,
    ) -> str:
        sections = [
            "## Status judgment",
            "Do not use any tools. Judge the result below against the criteria and "
            "answer with exactly one tag.",
            "",
            "## Result",
            _truncate(content, PREVIOUS_RESPONSE_MAX_CHARS) or "(empty)",
            "",
            *_status_criteria(movement.name, candidates),
        ]
        return "\n".join(sections) + "\n"


def _status_criteria(movement_name: str, rules: Sequence[tuple[int, Rule]]) -> list[str]:
    tag = movement_name.upper()
    lines = ["## Status", "When finished, output exactly one of these tags:"]
    for index, rule in rules:
        lines.append(f"- [{tag}:{index + 1}] {condition_text(rule)}")
    return lines


def _truncate(text: str, limit: int) -> str:
    stripped = text.strip()
    if len(stripped) <= limit:
        return stripped
    return stripped[:limit] + "\n...(truncated)"
