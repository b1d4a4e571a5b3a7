"""Piece engine: the per-task movement state machine."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field

from piecework.agents.base import AgentCaller, AgentRunError
from piecework.context import ExecutionContext
from piecework.engine.instructions import InstructionBuilder
from piecework.engine.loop_detector import DEFAULT_LOOP_THRESHOLD, LoopDetector
from piecework.engine.models import (
    ABORT,
    COMPLETE,
    AgentOptions,
    AgentResponse,
    AgentStatus,
    EngineRunState,
    Movement,
    PermissionMode,
    PersonaProviderEntry,
    Piece,
    PieceRunResult,
    ProviderKind,
    ProviderPermissionProfile,
    Rule,
    RunOutcome,
    SessionMode,
)
from piecework.engine.parallel import (
    SubMovementResult,
    SubMovementStream,
    aggregate_content,
    failure_summary,
)
from piecework.engine.pieces import validate_piece
from piecework.engine.resolution import (
    DEFAULT_PROVIDER_PERMISSION_PROFILES,
    ProviderTier,
    ResolvedProvider,
    resolve_model,
    resolve_movement_provider_model,
    resolve_permission_mode,
    resolve_provider,
)
from piecework.engine.sessions import movement_session_key
from piecework.engine.transitions import (
    EvaluationContext,
    JudgeVerdict,
    condition_text,
    resolve_transition,
)
from piecework.errors import (
    MaxMovementsReached,
    MovementExecutionFailed,
    PieceworkError,
    UnknownMovement,
)

logger = logging.getLogger(__name__)

INTERRUPTED_REASON = "Piece interrupted by user (SIGINT)"
ABORTED_REASON = "Piece aborted by movement transition"
JUDGMENT_MAX_TURNS = 3
JUDGMENT_SCHEMA = {
    "type": "object",
    "properties": {"matched_index": {"type": "integer"}},
    "required": ["matched_index"],
}
MOVEMENT_SCHEMA = {
    "type": "object",
    "properties": {"step": {"type": "integer"}},
    "required": ["step"],
}

MovementStartCallback = Callable[[Movement, int, int, int], None]


@dataclass(slots=True)
class EngineOptions:
    """Per-run engine configuration."""

    project_cwd: str
    cwd: str | None = None
    cli_provider: ProviderKind | None = None
    cli_model: str | None = None
    persona_providers: Mapping[str, PersonaProviderEntry] = field(default_factory=dict)
    project: ProviderTier = field(default_factory=ProviderTier)
    global_: ProviderTier = field(default_factory=ProviderTier)
    project_profiles: Mapping[ProviderKind, ProviderPermissionProfile] = field(
        default_factory=dict,
    )
    global_profiles: Mapping[ProviderKind, ProviderPermissionProfile] = field(
        default_factory=lambda: dict(DEFAULT_PROVIDER_PERMISSION_PROFILES),
    )
    loop_threshold: int = DEFAULT_LOOP_THRESHOLD
    start_movement: str | None = None
    retry_note: str | None = None
    initial_sessions: Mapping[str, str] = field(default_factory=dict)
    on_stream: Callable[[str], None] | None = None
    on_session_update: Callable[[str, str], None] | None = None
    on_movement_start: MovementStartCallback | None = None


class PieceEngine:
    """Drive one task through a piece's movements until COMPLETE/ABORT/failure."""

    def __init__(
        self,
        piece: Piece,
        *,
        agent: AgentCaller,
        options: EngineOptions,
        context: ExecutionContext | None = None,
        instructions: InstructionBuilder | None = None,
    ) -> None:
        validate_piece(piece, start_movement=options.start_movement)
        self.piece = piece
        self.agent = agent
        self.options = options
        self.context = context or ExecutionContext()
        self.instructions = instructions or InstructionBuilder(piece)
        self.loop_detector = LoopDetector(threshold=options.loop_threshold)
        self.state = EngineRunState(
            current_movement=options.start_movement or piece.initial_movement,
            persona_sessions=dict(options.initial_sessions),
        )

    @property
    def cwd(self) -> str:
        return self.options.cwd or self.options.project_cwd

    async def run(self, task: str) -> PieceRunResult:
        """Run the piece for ``task`` and return a structured result."""

        state = self.state
        try:
            while True:
                if self.context.aborted:
                    return self._result(
                        success=False,
                        outcome=RunOutcome.INTERRUPTED,
                        reason=INTERRUPTED_REASON,
                    )
                if state.global_iteration >= self.piece.max_movements:
                    raise MaxMovementsReached(self.piece.max_movements)

                movement = self.piece.get_movement(state.current_movement)
                if movement is None:
                    raise UnknownMovement(state.current_movement, piece=self.piece.name)

                state.global_iteration += 1
                movement_iteration = state.per_movement_iteration.get(movement.name, 0) + 1
                state.per_movement_iteration[movement.name] = movement_iteration
                if self.options.on_movement_start is not None:
                    self.options.on_movement_start(
                        movement,
                        state.global_iteration,
                        self.piece.max_movements,
                        movement_iteration,
                    )
                logger.info(
                    "Movement %s (%d/%d) started",
                    movement.name,
                    state.global_iteration,
                    self.piece.max_movements,
                )

                response = await self._run_movement(movement, task)
                if response is None:
                    return self._result(
                        success=False,
                        outcome=RunOutcome.ABORTED,
                        reason=f'Movement "{movement.name}" is blocked and needs user input',
                    )

                next_name = await self._resolve_next(movement, response)
                if next_name == COMPLETE:
                    return self._result(success=True, outcome=RunOutcome.COMPLETED)
                if next_name == ABORT:
                    return self._result(
                        success=False,
                        outcome=RunOutcome.ABORTED,
                        reason=ABORTED_REASON,
                    )
                if self.piece.get_movement(next_name) is None:
                    raise UnknownMovement(next_name, piece=self.piece.name)

                self.loop_detector.observe(movement.name, response.status, response.content)
                state.current_movement = next_name
        except PieceworkError as error:
            logger.error(
                "Piece %s failed at %s: %s",
                self.piece.name,
                state.current_movement,
                error,
            )
            return self._result(success=False, outcome=RunOutcome.FAILED, reason=str(error))

    async def _run_movement(self, movement: Movement, task: str) -> AgentResponse | None:
        """Call the agent for one movement; None when blocked without input."""

        if movement.is_parallel:
            return await self._run_parallel(movement, task)
        response = await self._call_movement_agent(movement, task)
        while response.status is AgentStatus.BLOCKED:
            user_input = await self.context.request_user_input(movement.name, response.content)
            if not user_input:
                return None
            self.state.add_user_input(user_input)
            response = await self._call_movement_agent(movement, task)
        return response

    async def _run_parallel(self, movement: Movement, task: str) -> AgentResponse:
        """Run all sub-movements concurrently and fold them into one response.

        A failed sub-movement is recorded as an error response; the movement
        fails only when every sub-movement failed.
        """

        subs = movement.parallel
        prompts: list[str] = []
        for sub in subs:
            self.state.per_movement_iteration[sub.name] = (
                self.state.per_movement_iteration.get(sub.name, 0) + 1
            )
            self.state.matched_conditions.pop(sub.name, None)
            prompts.append(
                self.instructions.build(
                    movement=sub,
                    task=task,
                    state=self.state,
                    retry_note=self.options.retry_note,
                ),
            )
        streams: list[SubMovementStream | None] = [None] * len(subs)
        if self.options.on_stream is not None:
            width = max(len(sub.name) for sub in subs)
            streams = [SubMovementStream(sub.name, width, self.options.on_stream) for sub in subs]

        results = await asyncio.gather(
            *(
                self._run_sub_movement(sub, task, prompt, stream)
                for sub, prompt, stream in zip(subs, prompts, streams, strict=True)
            ),
        )
        if all(result.failed for result in results):
            raise MovementExecutionFailed(
                f'Movement "{movement.name}" failed: all parallel sub-movements failed: '
                f"{failure_summary(results)}",
            )
        for result in results:
            matched = (
                condition_text(result.movement.rules[result.matched_index])
                if result.matched_index is not None
                else "no match"
            )
            logger.info("Sub-movement %s finished: %s", result.movement.name, matched)

        response = AgentResponse(
            persona=movement.persona or movement.name,
            status=AgentStatus.DONE,
            content=aggregate_content(results),
        )
        self.state.history.append(response)
        self.state.movement_outputs[movement.name] = response
        return response

    async def _run_sub_movement(
        self,
        movement: Movement,
        task: str,
        prompt: str,
        stream: SubMovementStream | None,
    ) -> SubMovementResult:
        try:
            response = await self._call_movement_agent(
                movement,
                task,
                prompt=prompt,
                on_stream=stream,
            )
        except MovementExecutionFailed as error:
            logger.error("Sub-movement %s failed: %s", movement.name, error)
            response = AgentResponse(
                persona=movement.persona or movement.name,
                status=AgentStatus.ERROR,
                content="",
                error=str(error),
            )
            self.state.movement_outputs[movement.name] = response
            return SubMovementResult(movement=movement, response=response)
        finally:
            if stream is not None:
                stream.flush()

        if not movement.rules:
            return SubMovementResult(movement=movement, response=response)

        async def _judge(candidates: Sequence[tuple[int, Rule]]) -> JudgeVerdict:
            return await self._judge_status(movement, candidates, response)

        try:
            match = await resolve_transition(
                movement.rules,
                response,
                EvaluationContext(
                    movement_name=movement.name,
                    interactive=self.context.interactive,
                    structured_output_requested=movement.output_schema,
                ),
                judge=_judge,
            )
        except MovementExecutionFailed as error:
            logger.warning("Sub-movement %s matched no rule: %s", movement.name, error)
            return SubMovementResult(movement=movement, response=response)
        self.state.matched_conditions[movement.name] = condition_text(movement.rules[match.index])
        return SubMovementResult(movement=movement, response=response, matched_index=match.index)

    async def _call_movement_agent(
        self,
        movement: Movement,
        task: str,
        *,
        prompt: str | None = None,
        on_stream: Callable[[str], None] | None = None,
    ) -> AgentResponse:
        key = movement_session_key(movement)
        in_project = self.cwd == self.options.project_cwd
        resume = movement.session is not SessionMode.REFRESH and in_project
        options = self._agent_options(
            movement,
            session_id=self.state.persona_sessions.get(key) if resume else None,
            allowed_tools=_phase1_tools(movement),
        )
        if on_stream is not None:
            options.on_stream = on_stream
        if movement.output_schema:
            options.output_schema = MOVEMENT_SCHEMA
        if prompt is None:
            prompt = self.instructions.build(
                movement=movement,
                task=task,
                state=self.state,
                retry_note=self.options.retry_note,
            )
        response = await self._call_agent(movement, prompt, options)
        self._update_session(key, response.session_id)
        self.state.history.append(response)
        self.state.movement_outputs[movement.name] = response
        if response.status is AgentStatus.ERROR:
            detail = response.error or response.content or "agent reported an error"
            raise MovementExecutionFailed(f'Movement "{movement.name}" failed: {detail}')
        return response

    async def _resolve_next(self, movement: Movement, response: AgentResponse) -> str:
        if not movement.rules:
            return self.piece.successor_of(movement.name)

        async def _judge(candidates: Sequence[tuple[int, Rule]]) -> JudgeVerdict:
            return await self._judge_status(movement, candidates, response)

        match = await resolve_transition(
            movement.rules,
            response,
            EvaluationContext(
                movement_name=movement.name,
                interactive=self.context.interactive,
                structured_output_requested=movement.output_schema,
                aggregate_inputs=self.state.matched_conditions,
                sub_movements=tuple(sub.name for sub in movement.parallel),
            ),
            judge=_judge,
        )
        rule = movement.rules[match.index]
        self.state.matched_conditions[movement.name] = condition_text(rule)
        logger.info(
            "Movement %s matched rule %d via %s -> %s",
            movement.name,
            match.index + 1,
            match.method.value,
            rule.next,
        )
        return rule.next

    async def _judge_status(
        self,
        movement: Movement,
        candidates: Sequence[tuple[int, Rule]],
        response: AgentResponse,
    ) -> JudgeVerdict:
        """Resume the movement's session read-only and ask for a status tag."""

        key = movement_session_key(movement)
        options = self._agent_options(
            movement,
            session_id=self.state.persona_sessions.get(key),
            allowed_tools=(),
            permission_mode=PermissionMode.READONLY,
        )
        options.max_turns = JUDGMENT_MAX_TURNS
        options.output_schema = JUDGMENT_SCHEMA
        prompt = self.instructions.build_status_judgment(
            movement=movement,
            candidates=candidates,
            content=response.content,
        )
        verdict = await self._call_agent(movement, prompt, options)
        self._update_session(key, verdict.session_id)
        if verdict.status is AgentStatus.ERROR:
            detail = verdict.error or "status judgment failed"
            raise MovementExecutionFailed(f'Movement "{movement.name}" failed: {detail}')
        return JudgeVerdict(content=verdict.content, structured_output=verdict.structured_output)

    async def _call_agent(
        self,
        movement: Movement,
        prompt: str,
        options: AgentOptions,
    ) -> AgentResponse:
        persona = movement.persona or movement.name
        try:
            return await self.agent.call(persona, prompt, options)
        except (AgentRunError, OSError) as error:
            raise MovementExecutionFailed(f'Movement "{movement.name}" failed: {error}') from error
        except Exception as error:
            logger.exception("Agent raised unexpectedly in movement %s", movement.name)
            raise MovementExecutionFailed(
                f'Movement "{movement.name}" failed: {type(error).__name__}: {error}',
            ) from error

    def _agent_options(
        self,
        movement: Movement,
        *,
        session_id: str | None,
        allowed_tools: tuple[str, ...] | None,
        permission_mode: PermissionMode | None = None,
    ) -> AgentOptions:
        top_level = self._resolve_top_level(movement)
        scoped = resolve_movement_provider_model(
            movement=movement,
            persona_providers=self.options.persona_providers,
            provider=top_level.provider,
            model=top_level.model,
        )
        mode = permission_mode or resolve_permission_mode(
            movement=movement,
            provider=scoped.provider,
            project_profiles=self.options.project_profiles,
            global_profiles=self.options.global_profiles,
        )
        return AgentOptions(
            cwd=self.cwd,
            provider=top_level.provider,
            model=top_level.model,
            movement_provider=scoped.provider,
            movement_model=scoped.model,
            permission_mode=mode,
            session_id=session_id,
            allowed_tools=allowed_tools,
            on_stream=self.options.on_stream,
        )

    def _resolve_top_level(self, movement: Movement) -> ResolvedProvider:
        entry = (
            self.options.persona_providers.get(movement.persona) if movement.persona else None
        )
        provider = resolve_provider(
            cli_provider=self.options.cli_provider,
            persona_entry=entry,
            movement=movement,
            project=self.options.project,
            global_=self.options.global_,
        )
        model = resolve_model(
            resolved_provider=provider,
            cli_model=self.options.cli_model,
            persona_entry=entry,
            movement=movement,
            project=self.options.project,
            global_=self.options.global_,
        )
        return ResolvedProvider(provider=provider, model=model)

    def _update_session(self, key: str, session_id: str | None) -> None:
        if not session_id or self.state.persona_sessions.get(key) == session_id:
            return
        self.state.persona_sessions[key] = session_id
        if self.options.on_session_update is not None:
            self.options.on_session_update(key, session_id)

    def _result(
        self,
        *,
        success: bool,
        outcome: RunOutcome,
        reason: str | None = None,
    ) -> PieceRunResult:
        last = self.state.last_response
        return PieceRunResult(
            success=success,
            outcome=outcome,
            reason=reason,
            last_movement=self.state.current_movement,
            last_message=last.content if last is not None else None,
            iterations=self.state.global_iteration,
        )


def _phase1_tools(movement: Movement) -> tuple[str, ...] | None:
    if movement.allowed_tools is None:
        return None
    if movement.edit is False:
        return tuple(tool for tool in movement.allowed_tools if tool not in {"Write", "Edit"})
    return movement.allowed_tools
