"""Domain models for pieces, movements and agent exchanges."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from piecework.storage.common import utc_now

COMPLETE = "COMPLETE"
ABORT = "ABORT"
TERMINAL_MOVEMENTS = frozenset({COMPLETE, ABORT})

MAX_USER_INPUTS = 100
MAX_USER_INPUT_LENGTH = 10_000


class AgentStatus(str, Enum):
    """Status vocabulary reported by agent calls."""

    PENDING = "pending"
    DONE = "done"
    BLOCKED = "blocked"
    APPROVED = "approved"
    REJECTED = "rejected"
    IMPROVE = "improve"
    CANCELLED = "cancelled"
    INTERRUPTED = "interrupted"
    ANSWER = "answer"
    ERROR = "error"


class RunOutcome(str, Enum):
    """Terminal outcome of one piece run."""

    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


class RuleMatchMethod(str, Enum):
    """How a transition rule was selected."""

    AGGREGATE = "aggregate"
    STRUCTURED_OUTPUT = "structured_output"
    PHASE1_TAG = "phase1_tag"
    PHASE3_TAG = "phase3_tag"
    AI_JUDGE = "ai_judge"
    AI_JUDGE_FALLBACK = "ai_judge_fallback"
    AUTO_SELECT = "auto_select"


class RuleKind(str, Enum):
    TAG = "tag"
    AI = "ai"
    AGGREGATE_ALL = "all"
    AGGREGATE_ANY = "any"


class PermissionMode(str, Enum):
    """Tool permission level, ordered readonly < edit < full."""

    READONLY = "readonly"
    EDIT = "edit"
    FULL = "full"

    @property
    def rank(self) -> int:
        return _PERMISSION_RANK[self]


_PERMISSION_RANK = {
    PermissionMode.READONLY: 0,
    PermissionMode.EDIT: 1,
    PermissionMode.FULL: 2,
}


class ProviderKind(str, Enum):
    """Agent provider variants."""

    CLAUDE = "claude"
    CODEX = "codex"
    MOCK = "mock"


class SessionMode(str, Enum):
    CONTINUE = "continue"
    REFRESH = "refresh"


@dataclass(frozen=True, slots=True)
class Rule:
    """One condition-to-next-movement mapping."""

    condition: str
    next: str
    kind: RuleKind = RuleKind.TAG
    aggregate_over: tuple[str, ...] = ()

    @property
    def is_aggregate(self) -> bool:
        return self.kind in {RuleKind.AGGREGATE_ALL, RuleKind.AGGREGATE_ANY}


@dataclass(frozen=True, slots=True)
class Movement:
    """One named phase of a piece bound to a persona and its rules."""

    name: str
    persona: str | None = None
    instruction: str = ""
    rules: tuple[Rule, ...] = ()
    provider: ProviderKind | None = None
    model: str | None = None
    permission_mode: PermissionMode | None = None
    required_permission_mode: PermissionMode | None = None
    edit: bool | None = None
    allowed_tools: tuple[str, ...] | None = None
    output_schema: bool = False
    session: SessionMode = SessionMode.CONTINUE
    parallel: tuple[Movement, ...] = ()

    @property
    def is_parallel(self) -> bool:
        return bool(self.parallel)


@dataclass(frozen=True, slots=True)
class Piece:
    """Workflow definition driving one task."""

    name: str
    movements: tuple[Movement, ...]
    initial_movement: str
    max_movements: int = 10
    description: str = ""

    def get_movement(self, name: str) -> Movement | None:
        for movement in self.movements:
            if movement.name == name:
                return movement
        return None

    def movement_names(self) -> list[str]:
        return [movement.name for movement in self.movements]

    def all_movements(self) -> list[Movement]:
        """Top-level movements followed by their parallel sub-movements."""

        subs = [sub for movement in self.movements for sub in movement.parallel]
        return [*self.movements, *subs]

    def successor_of(self, name: str) -> str:
        """Implicit next movement for a rule-less movement."""

        names = self.movement_names()
        index = names.index(name)
        if index + 1 < len(names):
            return names[index + 1]
        return COMPLETE


@dataclass(slots=True)
class AgentResponse:
    """Result of one agent call; read-only to the engine."""

    persona: str
    status: AgentStatus
    content: str
    session_id: str | None = None
    structured_output: dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=utc_now)
    error: str | None = None


@dataclass(slots=True)
class AgentOptions:
    """Per-call options handed to the agent collaborator."""

    cwd: str
    provider: ProviderKind | None
    model: str | None
    movement_provider: ProviderKind | None
    movement_model: str | None
    permission_mode: PermissionMode
    session_id: str | None = None
    allowed_tools: tuple[str, ...] | None = None
    max_turns: int | None = None
    output_schema: dict[str, Any] | None = None
    on_stream: Callable[[str], None] | None = None


@dataclass(slots=True)
class PersonaProviderEntry:
    """Persona-level provider/model override."""

    provider: ProviderKind | None = None
    model: str | None = None


@dataclass(slots=True)
class ProviderPermissionProfile:
    """Permission defaults for one provider kind."""

    default_permission_mode: PermissionMode
    movement_permission_overrides: dict[str, PermissionMode] = field(default_factory=dict)


@dataclass(slots=True)
class EngineRunState:
    """Mutable run state owned by a single engine instance."""

    current_movement: str
    global_iteration: int = 0
    per_movement_iteration: dict[str, int] = field(default_factory=dict)
    user_inputs: list[str] = field(default_factory=list)
    history: list[AgentResponse] = field(default_factory=list)
    persona_sessions: dict[str, str] = field(default_factory=dict)
    movement_outputs: dict[str, AgentResponse] = field(default_factory=dict)
    matched_conditions: dict[str, str] = field(default_factory=dict)

    def add_user_input(self, text: str) -> None:
        """Append bounded user input, dropping the oldest entry when full."""

        if len(self.user_inputs) >= MAX_USER_INPUTS:
            self.user_inputs.pop(0)
        self.user_inputs.append(text[:MAX_USER_INPUT_LENGTH])

    @property
    def last_response(self) -> AgentResponse | None:
        return self.history[-1] if self.history else None


@dataclass(slots=True)
class PieceRunResult:
    """Structured outcome of PieceEngine.run."""

    success: bool
    outcome: RunOutcome
    reason: str | None = None
    last_movement: str | None = None
    last_message: str | None = None
    iterations: int = 0
