"""Controllers for piecework CLI commands."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from piecework.agents import CliAgentProvider, MockAgentProvider, ProviderRouter
from piecework.config import Settings
from piecework.context import ExecutionContext
from piecework.engine.models import ProviderKind
from piecework.engine.pieces import PieceLoader
from piecework.errors import ExitCode
from piecework.tasks.execution import TaskExecutor
from piecework.tasks.lifecycle import TaskLifecycleService
from piecework.tasks.models import TaskCreate, TaskRecord, TaskStatus
from piecework.tasks.runner import TaskRunner
from piecework.tasks.store import TaskStore
from piecework.tasks.watcher import TaskWatcher

TASK_FILE_KEYS = frozenset(
    {
        "task",
        "worktree",
        "branch",
        "piece",
        "workflow",
        "issue",
        "start_movement",
        "retry_note",
        "auto_pr",
    },
)


@dataclass(slots=True)
class AddTaskCommand:
    """CLI input for queueing a task."""

    db_path: Path | None
    content: str | None
    task_file: Path | None = None
    options: TaskCreate = field(default_factory=TaskCreate)


@dataclass(slots=True)
class RunTasksCommand:
    """CLI input for the concurrent runner and the watcher."""

    db_path: Path | None
    concurrency: int | None = None
    max_tasks: int | None = None
    provider: str | None = None
    model: str | None = None
    quiet: bool | None = None


@dataclass(slots=True)
class ListTasksCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    db_path: Path | None
    name: str


@dataclass(slots=True)
class RetryTaskCommand:
    """CLI input for requeueing a failed task."""

    db_path: Path | None
    ref: str
    start_movement: str | None = None
    note: str | None = None


@dataclass(slots=True)
class DeleteTaskCommand:
    db_path: Path | None
    name: str
    status: str


@dataclass(slots=True)
class RecoverTasksCommand:
    db_path: Path | None


@dataclass(slots=True)
class CommandResult:
    """Printable lines plus the process exit code."""

    lines: list[str]
    exit_code: ExitCode = ExitCode.SUCCESS


class PieceworkCliController:
    """Coordinates task queue, runner and inspection CLI operations."""

    def add_task(self, command: AddTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        content = command.content
        options = command.options
        if command.task_file is not None:
            content, options = load_task_file(command.task_file)
        if not content:
            raise ValueError("Task text is required. Pass TEXT or --file.")
        with _lifecycle(settings) as lifecycle:
            task = lifecycle.add_task(content, options)
        return [
            f"Task added: name={task.name} status={task.status.value} "
            f"piece={task.piece or settings.project.piece or 'default'}",
        ]

    def run_tasks(self, command: RunTasksCommand) -> CommandResult:
        settings = _runtime_settings(command)
        with _lifecycle(settings) as lifecycle:
            executor = _build_executor(settings, lifecycle, command)
            runner = TaskRunner(
                executor=executor,
                concurrency=command.concurrency or settings.runner.concurrency,
                poll_interval_seconds=settings.runner.run_poll_interval_seconds,
            )
            summary = asyncio.run(runner.run(max_tasks=command.max_tasks))

        exit_code = ExitCode.SUCCESS
        if summary.interrupted:
            exit_code = ExitCode.INTERRUPTED
        elif summary.failed:
            exit_code = ExitCode.PIECE_FAILED
        lines = []
        if summary.total == 0:
            lines.append("No pending tasks.")
        lines.append(
            "Run summary: "
            f"total={summary.total} succeeded={summary.succeeded} "
            f"failed={summary.failed} interrupted={summary.interrupted}",
        )
        return CommandResult(lines=lines, exit_code=exit_code)

    def watch(self, command: RunTasksCommand) -> CommandResult:
        settings = _runtime_settings(command)
        with _lifecycle(settings) as lifecycle:
            executor = _build_executor(settings, lifecycle, command)
            watcher = TaskWatcher(
                executor=executor,
                poll_interval_seconds=settings.runner.watch_poll_interval_seconds,
            )
            summary = asyncio.run(watcher.watch(max_tasks=command.max_tasks))
            aborted = executor.context.aborted

        return CommandResult(
            lines=[
                "Watch summary: "
                f"total={summary.total} succeeded={summary.succeeded} "
                f"failed={summary.failed} recovered={summary.recovered}",
            ],
            exit_code=ExitCode.INTERRUPTED if aborted else ExitCode.SUCCESS,
        )

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _lifecycle(settings) as lifecycle:
            tasks = lifecycle.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(_task_line(task) for task in tasks)
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _lifecycle(settings) as lifecycle:
            details = lifecycle.get_task_details(command.name)

        task = details.task
        lines = [
            f"Task: {task.name}",
            f"Status: {task.status.value}",
            f"Piece: {task.piece or '-'}",
            f"Created: {task.created_at.isoformat()}",
            f"Started: {task.started_at.isoformat() if task.started_at else '-'}",
            f"Completed: {task.completed_at.isoformat() if task.completed_at else '-'}",
            f"Owner pid: {task.owner_pid or '-'}",
            f"Worktree: {task.worktree_path or task.worktree or '-'}",
            f"Branch: {task.branch or '-'}",
            f"Start movement: {task.start_movement or '-'}",
            f"Response: {task.response or '-'}",
        ]
        if task.failure is not None:
            lines += [
                f"Failed movement: {task.failure.movement or '-'}",
                f"Error: {task.failure.error}",
                f"Last message: {task.failure.last_message or '-'}",
            ]
        if task.retry_note:
            lines.append(f"Retry note: {task.retry_note}")
        lines.append("Content:")
        lines.extend(f"  {line}" for line in task.content.splitlines())
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def retry_task(self, command: RetryTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _lifecycle(settings) as lifecycle:
            task = lifecycle.requeue_failed_task(
                command.ref,
                start_movement=command.start_movement,
                retry_note=command.note,
            )
        return [f"Task re-queued: {task.name} start_movement={task.start_movement or '-'}"]

    def delete_task(self, command: DeleteTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = _parse_status(command.status)
        with _lifecycle(settings) as lifecycle:
            lifecycle.delete_task(command.name, status)
        return [f"Task deleted: {command.name} ({status.value})"]

    def recover(self, command: RecoverTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _lifecycle(settings) as lifecycle:
            recovered = lifecycle.recover_interrupted_running_tasks()
        return [f"Recovered tasks: {recovered}"]

    def pieces(self) -> list[str]:
        settings = Settings.from_env()
        loader = PieceLoader([settings.pieces_dir])
        lines = []
        for name in loader.available():
            piece = loader.load(name)
            lines.append(
                f"{name}: {piece.description or '-'} "
                f"(movements={','.join(piece.movement_names())} max={piece.max_movements})",
            )
        return lines or ["No pieces found."]


def load_task_file(path: Path) -> tuple[str, TaskCreate]:
    """Read a YAML task file into task text and create options."""

    data = yaml.safe_load(path.read_text("utf-8"))
    if not isinstance(data, Mapping):
        raise ValueError(f"Task file must be a mapping: {path}")
    unknown = set(data) - TASK_FILE_KEYS
    if unknown:
        raise ValueError(f"Unknown task file keys in {path}: {', '.join(sorted(unknown))}")
    content = data.get("task")
    if not isinstance(content, str) or not content.strip():
        raise ValueError(f"Task file needs a non-empty 'task': {path}")
    return content, TaskCreate(
        piece=data.get("piece") or data.get("workflow"),
        worktree=_worktree_value(data.get("worktree")),
        branch=data.get("branch"),
        issue=int(data["issue"]) if data.get("issue") is not None else None,
        start_movement=data.get("start_movement"),
        retry_note=data.get("retry_note"),
        auto_pr=bool(data.get("auto_pr", False)),
    )


def build_agent(settings: Settings) -> ProviderRouter:
    """Provider router with every shipped provider variant."""

    providers = settings.providers
    return ProviderRouter(
        {
            ProviderKind.CLAUDE: CliAgentProvider(
                ProviderKind.CLAUDE,
                command_template=providers.command_templates.get(ProviderKind.CLAUDE),
                timeout_seconds=providers.agent_timeout_seconds,
            ),
            ProviderKind.CODEX: CliAgentProvider(
                ProviderKind.CODEX,
                command_template=providers.command_templates.get(ProviderKind.CODEX),
                timeout_seconds=providers.agent_timeout_seconds,
            ),
            ProviderKind.MOCK: MockAgentProvider(),
        },
        default=providers.provider or settings.project.provider,
    )


def _runtime_settings(command: RunTasksCommand) -> Settings:
    settings = Settings.from_env(db_path=command.db_path)
    if command.quiet is not None:
        settings.runner.quiet = command.quiet
    settings.validate()
    return settings


def _build_executor(
    settings: Settings,
    lifecycle: TaskLifecycleService,
    command: RunTasksCommand,
) -> TaskExecutor:
    return TaskExecutor(
        settings=settings,
        lifecycle=lifecycle,
        agent=build_agent(settings),
        context=ExecutionContext(quiet=settings.runner.quiet),
        cli_provider=ProviderKind(command.provider.lower()) if command.provider else None,
        cli_model=command.model,
    )


def _task_line(task: TaskRecord) -> str:
    return (
        f"  {task.name} status={task.status.value} piece={task.piece or '-'} "
        f"created={task.created_at.isoformat()}"
        + (f" owner_pid={task.owner_pid}" if task.owner_pid else "")
    )


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _worktree_value(value: Any) -> bool | str | None:
    if value is None or isinstance(value, bool):
        return value
    return str(value)


@contextmanager
def _lifecycle(settings: Settings) -> Iterator[TaskLifecycleService]:
    store = TaskStore(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    store.init_schema()
    try:
        yield TaskLifecycleService(store)
    finally:
        store.close()
