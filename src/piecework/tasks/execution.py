"""Run one claimed task through its piece and persist the outcome."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

import yaml

from piecework.agents.base import AgentCaller
from piecework.config import Settings
from piecework.context import ExecutionContext
from piecework.engine.engine import EngineOptions, PieceEngine
from piecework.engine.models import Movement, ProviderKind, RunOutcome
from piecework.engine.pieces import PieceLoader
from piecework.engine.sessions import SessionStore, movement_session_key
from piecework.errors import PieceworkError
from piecework.storage.common import utc_now
from piecework.tasks.clone import CloneManager, CloneResult
from piecework.tasks.lifecycle import TaskLifecycleService
from piecework.tasks.models import TaskRecord, TaskResult
from piecework.tasks.prefix_writer import MovementContext, TaskPrefixWriter

logger = logging.getLogger(__name__)

SUCCESS_RESPONSE = "Task completed successfully"
FAILURE_RESPONSE = "Task failed"


@dataclass(slots=True)
class TaskExecutor:
    """Collaborators needed to execute tasks claimed from the store."""

    settings: Settings
    lifecycle: TaskLifecycleService
    agent: AgentCaller
    context: ExecutionContext = field(default_factory=ExecutionContext)
    piece_loader: PieceLoader | None = None
    clones: CloneManager = field(default_factory=CloneManager)
    cli_provider: ProviderKind | None = None
    cli_model: str | None = None

    def __post_init__(self) -> None:
        if self.piece_loader is None:
            self.piece_loader = PieceLoader([self.settings.pieces_dir])

    async def execute_task(
        self,
        task: TaskRecord,
        *,
        writer: TaskPrefixWriter | None = None,
    ) -> TaskResult:
        """Execute ``task`` and record completion or failure in the store.

        An interrupted run is not recorded: the record stays running and is
        requeued by recovery once this process exits.
        """

        started_at = task.started_at or utc_now()
        clone: CloneResult | None = None
        try:
            piece = self.piece_loader.load(task.piece or self.settings.project.piece)
            if task.worktree:
                clone = await self.clones.create(
                    self.settings.project_dir,
                    task_name=task.name,
                    worktree=task.worktree,
                    branch=task.branch,
                    issue=task.issue,
                )
            engine = PieceEngine(
                piece,
                agent=self.agent,
                options=self._engine_options(
                    task,
                    tuple(piece.all_movements()),
                    clone=clone,
                    writer=writer,
                ),
                context=self.context,
            )
            outcome = await engine.run(task.content)
            if writer is not None:
                writer.flush()
            if outcome.success and clone is not None:
                commit = await self.clones.auto_commit(clone.path, f"piecework: {task.name}")
                if commit is not None:
                    await self.clones.push(clone.path, self.settings.project_dir)
        except (PieceworkError, ValueError, OSError, yaml.YAMLError) as error:
            logger.error("Task %s failed before completion: %s", task.name, error)
            return await self._record_failure(task, str(error), started_at, clone)
        except Exception as error:  # noqa: BLE001
            logger.exception("Task %s crashed", task.name)
            detail = f"Unexpected error: {type(error).__name__}: {error}"
            return await self._record_failure(task, detail, started_at, clone)

        result = TaskResult(
            task=task,
            success=outcome.success,
            response=SUCCESS_RESPONSE if outcome.success else FAILURE_RESPONSE,
            started_at=started_at,
            completed_at=utc_now(),
            failed_movement=None if outcome.success else outcome.last_movement,
            error=None if outcome.success else outcome.reason,
            last_message=outcome.last_message,
            worktree_path=str(clone.path) if clone else None,
            branch=clone.branch if clone else None,
            interrupted=outcome.outcome is RunOutcome.INTERRUPTED,
        )
        if result.interrupted:
            logger.warning("Task %s interrupted at %s", task.name, outcome.last_movement)
            return result
        if result.success:
            await asyncio.to_thread(self.lifecycle.complete_task, result)
            logger.info("Task %s completed", task.name)
        else:
            await asyncio.to_thread(self.lifecycle.fail_task, result)
            logger.info("Task %s failed: %s", task.name, result.error)
        return result

    async def _record_failure(
        self,
        task: TaskRecord,
        detail: str,
        started_at: datetime,
        clone: CloneResult | None,
    ) -> TaskResult:
        result = TaskResult(
            task=task,
            success=False,
            response=detail,
            started_at=started_at,
            completed_at=utc_now(),
            failed_movement=task.start_movement,
            error=detail,
            worktree_path=str(clone.path) if clone else None,
            branch=clone.branch if clone else None,
        )
        await asyncio.to_thread(self.lifecycle.fail_task, result)
        return result

    def _engine_options(
        self,
        task: TaskRecord,
        movements: tuple[Movement, ...],
        *,
        clone: CloneResult | None,
        writer: TaskPrefixWriter | None,
    ) -> EngineOptions:
        settings = self.settings
        project_cwd = str(settings.project_dir)
        sessions = SessionStore(settings.sessions_dir)
        in_project = clone is None

        def _on_session_update(key: str, session_id: str) -> None:
            if in_project:
                sessions.save(key, session_id)

        def _on_stream(text: str) -> None:
            if writer is not None:
                writer.write_chunk(text)
            else:
                self.context.write(text)

        def _on_movement_start(
            movement: Movement,
            iteration: int,
            max_movements: int,
            movement_iteration: int,
        ) -> None:
            if writer is None:
                self.context.write(f"\n--- {movement.name} ({iteration}/{max_movements}) ---\n")
                return
            writer.flush()
            writer.set_movement(
                MovementContext(
                    movement=movement.name,
                    iteration=iteration,
                    max_movements=max_movements,
                    movement_iteration=movement_iteration,
                ),
            )

        return EngineOptions(
            project_cwd=project_cwd,
            cwd=str(clone.path) if clone else project_cwd,
            cli_provider=self.cli_provider,
            cli_model=self.cli_model,
            persona_providers=settings.providers.persona_providers,
            project=settings.project.tier,
            global_=settings.global_tier,
            project_profiles=settings.project.provider_profiles,
            global_profiles=settings.global_profiles,
            loop_threshold=settings.runner.loop_threshold,
            start_movement=task.start_movement,
            retry_note=task.retry_note,
            initial_sessions=(
                sessions.load_all([movement_session_key(movement) for movement in movements])
                if in_project
                else {}
            ),
            on_stream=_on_stream,
            on_session_update=_on_session_update,
            on_movement_start=_on_movement_start,
        )
