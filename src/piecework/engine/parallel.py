"""Helpers for movements whose sub-movements run concurrently."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass

from piecework.engine.models import AgentResponse, AgentStatus, Movement

SECTION_SEPARATOR = "\n\n---\n\n"


@dataclass(slots=True)
class SubMovementResult:
    """One sub-movement's response and the rule it matched, if any."""

    movement: Movement
    response: AgentResponse
    matched_index: int | None = None

    @property
    def failed(self) -> bool:
        return self.response.status is AgentStatus.ERROR


class SubMovementStream:
    """Forward whole lines of one sub-movement's stream labelled with its name.

    Each sub-movement buffers separately, so concurrent sub-movements sharing
    one output never split each other's lines.
    """

    def __init__(self, name: str, width: int, forward: Callable[[str], None]) -> None:
        self.label = f"[{name.ljust(width)}]"
        self._forward = forward
        self._pending = ""

    def __call__(self, text: str) -> None:
        data = self._pending + text
        *complete, self._pending = data.split("\n")
        for line in complete:
            self._forward(f"{self.label} {line}\n")

    def flush(self) -> None:
        if self._pending:
            line, self._pending = self._pending, ""
            self._forward(f"{self.label} {line}\n")


def aggregate_content(results: Sequence[SubMovementResult]) -> str:
    return SECTION_SEPARATOR.join(
        f"## {result.movement.name}\n{result.response.content}" for result in results
    )


def failure_summary(results: Sequence[SubMovementResult]) -> str:
    return "; ".join(
        f"{result.movement.name}: {result.response.error or 'failed'}" for result in results
    )
