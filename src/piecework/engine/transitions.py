"""Transition resolution from agent responses to movement rules."""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field

from piecework.engine.models import (
    AgentResponse,
    Rule,
    RuleKind,
    RuleMatchMethod,
)
from piecework.errors import MovementExecutionFailed

_CONDITION_CALL = re.compile(r'^\s*(ai|all|any)\(\s*"(.*)"\s*\)\s*$', re.DOTALL)


@dataclass(slots=True)
class RuleMatch:
    """Matched rule index and the method that found it."""

    index: int
    method: RuleMatchMethod


@dataclass(slots=True)
class JudgeVerdict:
    """Parsed output of the status-judgment sub-phase."""

    content: str
    structured_output: dict[str, object] | None = None


Judge = Callable[[Sequence[tuple[int, Rule]]], Awaitable[JudgeVerdict]]


@dataclass(slots=True)
class EvaluationContext:
    """Inputs the resolver needs beyond the rules and response."""

    movement_name: str
    interactive: bool = False
    structured_output_requested: bool = False
    aggregate_inputs: Mapping[str, str] = field(default_factory=dict)
    sub_movements: tuple[str, ...] = ()


def parse_condition(text: str) -> tuple[RuleKind, str]:
    """Split ``ai("x")``/``all("x")``/``any("x")`` wrappers from plain text."""

    match = _CONDITION_CALL.match(text)
    if match is None:
        return RuleKind.TAG, text.strip()
    return RuleKind(match.group(1)), match.group(2).strip()


def condition_text(rule: Rule) -> str:
    return parse_condition(rule.condition)[1]


def detect_rule_index(content: str, movement_name: str) -> int:
    """Return the 0-based rule index from the last ``[MOVEMENT:N]`` tag, or -1.

    Tags are 1-based and matched case-insensitively.
    """

    pattern = re.compile(rf"\[{re.escape(movement_name)}:(\d+)\]", re.IGNORECASE)
    matches = pattern.findall(content)
    if not matches:
        return -1
    index = int(matches[-1]) - 1
    return index if index >= 0 else -1


def evaluate_aggregate(
    rule: Rule,
    outcomes: Mapping[str, str],
    constituents: Sequence[str] = (),
) -> bool:
    """Evaluate an all()/any() rule against matched condition texts.

    Constituents are the rule's ``over`` list, else the parallel sub-movements.
    A constituent without a matched condition fails ``all`` and is skipped by
    ``any``. No constituents never matches.
    """

    names = rule.aggregate_over or tuple(constituents)
    if not names:
        return False
    expected = condition_text(rule).lower()
    matched = [outcomes[name].strip().lower() if name in outcomes else None for name in names]
    if rule.kind is RuleKind.AGGREGATE_ALL:
        return all(value == expected for value in matched)
    return any(value == expected for value in matched)


async def resolve_transition(
    rules: Sequence[Rule],
    response: AgentResponse,
    context: EvaluationContext,
    *,
    judge: Judge | None = None,
) -> RuleMatch:
    """Pick the rule selected by an agent response.

    Order: structured ``step`` field, explicit tag in the response, aggregate
    rules, then the judgment sub-phase.
    """

    if not rules:
        raise MovementExecutionFailed(
            f'No rules to evaluate for movement "{context.movement_name}"',
        )

    if context.structured_output_requested:
        index = _structured_index(response.structured_output, "step", len(rules))
        if index is not None:
            return RuleMatch(index=index, method=RuleMatchMethod.STRUCTURED_OUTPUT)

    tag_index = detect_rule_index(response.content, context.movement_name)
    if 0 <= tag_index < len(rules):
        return RuleMatch(index=tag_index, method=RuleMatchMethod.PHASE1_TAG)

    for index, rule in enumerate(rules):
        if rule.is_aggregate and evaluate_aggregate(
            rule,
            context.aggregate_inputs,
            context.sub_movements,
        ):
            return RuleMatch(index=index, method=RuleMatchMethod.AGGREGATE)

    candidates = [(index, rule) for index, rule in enumerate(rules) if not rule.is_aggregate]
    if judge is not None and candidates:
        if len(candidates) == 1:
            return RuleMatch(index=candidates[0][0], method=RuleMatchMethod.AUTO_SELECT)
        verdict = await judge(candidates)
        matched = match_judgment(verdict, candidates, context.movement_name)
        if matched is not None:
            return matched

    raise MovementExecutionFailed(
        f'No matching rule found for movement "{context.movement_name}"',
    )


def match_judgment(
    verdict: JudgeVerdict,
    candidates: Sequence[tuple[int, Rule]],
    movement_name: str,
) -> RuleMatch | None:
    """Map a judgment response to a rule: tag, structured index, then keywords."""

    tag_index = detect_rule_index(verdict.content, movement_name)
    candidate_indexes = {index for index, _ in candidates}
    if tag_index in candidate_indexes:
        return RuleMatch(index=tag_index, method=RuleMatchMethod.PHASE3_TAG)

    structured = _structured_index(
        verdict.structured_output,
        "matched_index",
        max(candidate_indexes) + 1,
    )
    if structured is not None and structured in candidate_indexes:
        return RuleMatch(index=structured, method=RuleMatchMethod.AI_JUDGE)

    lowered = verdict.content.lower()
    for index, rule in candidates:
        text = condition_text(rule).lower()
        if text and text in lowered:
            return RuleMatch(index=index, method=RuleMatchMethod.AI_JUDGE_FALLBACK)
    return None


def _structured_index(
    payload: Mapping[str, object] | None,
    key: str,
    rule_count: int,
) -> int | None:
    if not payload:
        return None
    value = payload.get(key)
    if isinstance(value, bool):
        return None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int):
        return None
    index = value - 1
    if 0 <= index < rule_count:
        return index
    return None
