"""CLI entrypoint for piecework."""

import logging
import os
from pathlib import Path

import rich_click as click

from piecework import __version__
from piecework.controllers import (
    AddTaskCommand,
    CommandResult,
    DeleteTaskCommand,
    InspectTaskCommand,
    ListTasksCommand,
    PieceworkCliController,
    RecoverTasksCommand,
    RetryTaskCommand,
    RunTasksCommand,
)
from piecework.errors import ExitCode, PieceworkError
from piecework.tasks.models import TaskCreate, TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = PieceworkCliController()
TASK_STATUSES = [status.value for status in TaskStatus]


class PieceworkGroup(click.RichGroup):
    """Map domain errors to exit codes."""

    def invoke(self, ctx: click.Context) -> object:
        try:
            return super().invoke(ctx)
        except PieceworkError as error:
            click.echo(f"Error: {error}", err=True)
            ctx.exit(int(error.exit_code))
        except ValueError as error:
            click.echo(f"Error: {error}", err=True)
            ctx.exit(int(ExitCode.GENERAL_ERROR))
        return None


@click.group(cls=PieceworkGroup)
@click.version_option(version=__version__, prog_name="piecework")
def piecework() -> None:
    """Piecework: run AI-agent tasks through multi-movement pieces."""

    logging.basicConfig(
        level=os.getenv("PIECEWORK_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@piecework.command("add")
@click.argument("text", required=False)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--file",
    "task_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML task file with task, piece, worktree, branch, issue, ... keys.",
)
@click.option("--piece", "--workflow", "piece", default=None, help="Piece name or YAML path.")
@click.option("--worktree", is_flag=True, default=False, help="Run in an isolated clone.")
@click.option("--worktree-path", default=None, help="Explicit clone path (implies --worktree).")
@click.option("--branch", default=None, help="Branch name for the clone.")
@click.option("--issue", type=click.IntRange(min=1), default=None, help="Issue number.")
@click.option("--start-movement", default=None, help="Movement to start from.")
@click.option("--auto-pr", is_flag=True, default=False, help="Request a PR after completion.")
def add(  # noqa: PLR0913
    text: str | None,
    db_path: Path | None,
    task_file: Path | None,
    piece: str | None,
    worktree: bool,
    worktree_path: str | None,
    branch: str | None,
    issue: int | None,
    start_movement: str | None,
    auto_pr: bool,
) -> None:
    """Queue a task from TEXT or a YAML task file."""

    _emit_lines(
        CONTROLLER.add_task(
            AddTaskCommand(
                db_path=db_path,
                content=text,
                task_file=task_file,
                options=TaskCreate(
                    piece=piece,
                    worktree=worktree_path or (True if worktree else None),
                    branch=branch,
                    issue=issue,
                    start_movement=start_movement,
                    auto_pr=auto_pr,
                ),
            ),
        ),
    )


@piecework.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Parallel task slots (default PIECEWORK_CONCURRENCY).",
)
@click.option("--max-tasks", type=click.IntRange(min=1), default=None, help="Stop after N tasks.")
@click.option(
    "--provider",
    type=click.Choice(["claude", "codex", "mock"], case_sensitive=False),
    default=None,
    help="Provider override for every movement.",
)
@click.option("--model", default=None, help="Model override for every movement.")
@click.option("--quiet/--no-quiet", default=None, help="Suppress streamed agent output.")
def run(  # noqa: PLR0913
    db_path: Path | None,
    concurrency: int | None,
    max_tasks: int | None,
    provider: str | None,
    model: str | None,
    quiet: bool | None,
) -> None:
    """Run pending tasks until the queue is empty."""

    _emit_result(
        CONTROLLER.run_tasks(
            RunTasksCommand(
                db_path=db_path,
                concurrency=concurrency,
                max_tasks=max_tasks,
                provider=provider,
                model=model,
                quiet=quiet,
            ),
        ),
    )


@piecework.command("watch")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--max-tasks", type=click.IntRange(min=1), default=None, help="Stop after N tasks.")
@click.option(
    "--provider",
    type=click.Choice(["claude", "codex", "mock"], case_sensitive=False),
    default=None,
    help="Provider override for every movement.",
)
@click.option("--model", default=None, help="Model override for every movement.")
def watch(
    db_path: Path | None,
    max_tasks: int | None,
    provider: str | None,
    model: str | None,
) -> None:
    """Recover interrupted tasks, then claim and run tasks as they arrive."""

    _emit_result(
        CONTROLLER.watch(
            RunTasksCommand(
                db_path=db_path,
                max_tasks=max_tasks,
                provider=provider,
                model=model,
            ),
        ),
    )


@piecework.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(TASK_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of tasks to print.",
)
def list_tasks(db_path: Path | None, status: str | None, limit: int) -> None:
    """List tasks in queue order."""

    _emit_lines(
        CONTROLLER.list_tasks(ListTasksCommand(db_path=db_path, status=status, limit=limit)),
    )


@piecework.command("inspect")
@click.argument("name")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def inspect(name: str, db_path: Path | None) -> None:
    """Show one task with its failure details and event trail."""

    _emit_lines(CONTROLLER.inspect_task(InspectTaskCommand(db_path=db_path, name=name)))


@piecework.command("retry")
@click.argument("ref")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--start-movement", default=None, help="Movement to restart from.")
@click.option("--note", default=None, help="Retry note appended to the task.")
def retry(ref: str, db_path: Path | None, start_movement: str | None, note: str | None) -> None:
    """Requeue a failed task by name or task path."""

    _emit_lines(
        CONTROLLER.retry_task(
            RetryTaskCommand(
                db_path=db_path,
                ref=ref,
                start_movement=start_movement,
                note=note,
            ),
        ),
    )


@piecework.command("delete")
@click.argument("name")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(
        [TaskStatus.PENDING.value, TaskStatus.COMPLETED.value, TaskStatus.FAILED.value],
        case_sensitive=False,
    ),
    required=True,
    help="Status the task must currently have.",
)
def delete(name: str, db_path: Path | None, status: str) -> None:
    """Delete a pending, completed or failed task."""

    _emit_lines(
        CONTROLLER.delete_task(DeleteTaskCommand(db_path=db_path, name=name, status=status)),
    )


@piecework.command("recover")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def recover(db_path: Path | None) -> None:
    """Requeue running tasks whose owner process is gone."""

    _emit_lines(CONTROLLER.recover(RecoverTasksCommand(db_path=db_path)))


@piecework.command("pieces")
def pieces() -> None:
    """List available pieces."""

    _emit_lines(CONTROLLER.pieces())


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


def _emit_result(result: CommandResult) -> None:
    _emit_lines(result.lines)
    if result.exit_code is not ExitCode.SUCCESS:
        click.get_current_context().exit(int(result.exit_code))


if __name__ == "__main__":  # pragma: no cover
    piecework()
