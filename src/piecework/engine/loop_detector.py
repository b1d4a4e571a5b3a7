"""Detection of non-productive movement repetition."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field

from piecework.engine.models import AgentStatus
from piecework.errors import LoopDetected

DEFAULT_LOOP_THRESHOLD = 3

_WHITESPACE = re.compile(r"\s+")


def response_fingerprint(status: AgentStatus, content: str) -> tuple[str, str]:
    """Status plus sha256 of whitespace-normalized content."""

    normalized = _WHITESPACE.sub(" ", content).strip()
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()
    return status.value, digest


@dataclass(slots=True)
class LoopDetector:
    """Raise LoopDetected after ``threshold`` consecutive non-progressing repeats.

    A run progressed when no earlier run of the same movement exists or its
    fingerprint differs from that earlier run. A new movement name or a
    progressed run clears the window.
    """

    threshold: int = DEFAULT_LOOP_THRESHOLD
    _window: list[tuple[str, bool]] = field(default_factory=list, init=False, repr=False)
    _fingerprints: dict[str, tuple[str, str]] = field(
        default_factory=dict,
        init=False,
        repr=False,
    )

    def __post_init__(self) -> None:
        if self.threshold < 1:
            raise ValueError(f"Loop threshold must be >= 1, got {self.threshold}")

    def observe(self, movement: str, status: AgentStatus, content: str) -> bool:
        """Record one execution and return whether it progressed."""

        fingerprint = response_fingerprint(status, content)
        previous = self._fingerprints.get(movement)
        self._fingerprints[movement] = fingerprint
        progressed = previous is None or previous != fingerprint
        self.record(movement, progressed=progressed)
        return progressed

    def record(self, movement: str, *, progressed: bool) -> None:
        if progressed or (self._window and self._window[-1][0] != movement):
            self._window.clear()
        if progressed:
            return
        self._window.append((movement, progressed))
        if len(self._window) >= self.threshold:
            count = len(self._window)
            self._window.clear()
            raise LoopDetected(movement, count)

    @property
    def repeat_count(self) -> int:
        return len(self._window)

    def reset(self) -> None:
        self._window.clear()
        self._fingerprints.clear()
