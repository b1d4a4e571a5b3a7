from __future__ import annotations

from pathlib import Path

import allure
from click.testing import CliRunner

from piecework.main import piecework
from piecework.tasks.lifecycle import TaskLifecycleService
from piecework.tasks.models import TaskStatus
from piecework.tasks.store import TaskStore

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("CLI Operations"),
]

# Above the Linux pid_max ceiling, so no live process can own it.
_UNUSED_PID = 4_194_305


def _invoke(*args: str):
    return CliRunner().invoke(piecework, list(args))


def _db_path(project_env: Path) -> Path:
    return project_env / ".piecework" / "tasks.db"


def test_add_run_list_inspect_round_trip(project_env: Path) -> None:
    added = _invoke("add", "Add a health endpoint")
    assert added.exit_code == 0, added.output
    assert "Task added: name=add-a-health-endpoint status=pending piece=default" in added.output

    run = _invoke("run")
    assert run.exit_code == 0, run.output
    assert "Run summary: total=1 succeeded=1 failed=0 interrupted=0" in run.output

    listed = _invoke("list", "--status", "completed")
    assert listed.exit_code == 0
    assert "Tasks: 1" in listed.output
    assert "add-a-health-endpoint status=completed" in listed.output

    inspected = _invoke("inspect", "add-a-health-endpoint")
    assert inspected.exit_code == 0
    assert "Status: completed" in inspected.output
    assert "Response: Task completed successfully" in inspected.output
    assert "claimed pending -> running" in inspected.output
    assert "completed running -> completed" in inspected.output

    empty = _invoke("run")
    assert empty.exit_code == 0
    assert "No pending tasks." in empty.output


def test_failed_run_exits_with_piece_failure_and_can_be_retried(project_env: Path) -> None:
    _invoke("add", "Broken piece", "--piece", "missing-piece")

    run = _invoke("run")
    assert run.exit_code == 3
    assert "failed=1" in run.output

    inspected = _invoke("inspect", "broken-piece")
    assert "Status: failed" in inspected.output
    assert "Error: Piece not found: missing-piece" in inspected.output

    retried = _invoke("retry", "broken-piece", "--start-movement", "plan", "--note", "Use default")
    assert retried.exit_code == 0, retried.output
    assert "Task re-queued: broken-piece start_movement=plan" in retried.output
    assert "Retry note: Use default" in _invoke("inspect", "broken-piece").output

    again = _invoke("retry", "broken-piece")
    assert again.exit_code == 1
    assert "Failed task not found: broken-piece" in again.output

    deleted = _invoke("delete", "broken-piece", "--status", "pending")
    assert deleted.exit_code == 0
    assert "Task deleted: broken-piece (pending)" in deleted.output
    assert "Tasks: 0" in _invoke("list").output


def test_add_from_task_file(project_env: Path, tmp_path: Path) -> None:
    task_file = tmp_path / "task.yaml"
    task_file.write_text(
        "task: Refresh the docs\nworkflow: quick\nissue: 7\nstart_movement: implement\n",
        "utf-8",
    )

    added = _invoke("add", "--file", str(task_file))

    assert added.exit_code == 0, added.output
    assert "piece=quick" in added.output
    inspected = _invoke("inspect", "refresh-the-docs")
    assert "Start movement: implement" in inspected.output


def test_invalid_input_reports_errors(project_env: Path, tmp_path: Path) -> None:
    missing_text = _invoke("add")
    assert missing_text.exit_code == 1
    assert "Task text is required" in missing_text.output

    bad_file = tmp_path / "bad.yaml"
    bad_file.write_text("task: x\ncolour: blue\n", "utf-8")
    unknown_key = _invoke("add", "--file", str(bad_file))
    assert unknown_key.exit_code == 1
    assert "Unknown task file keys" in unknown_key.output

    missing_task = _invoke("inspect", "ghost")
    assert missing_task.exit_code == 1
    assert "Task not found: ghost" in missing_task.output


def test_recover_requeues_tasks_of_dead_owner(project_env: Path) -> None:
    _invoke("add", "Orphaned work")
    store = TaskStore(_db_path(project_env))
    try:
        TaskLifecycleService(store, pid=_UNUSED_PID).claim_next_tasks(1)
    finally:
        store.close()

    recovered = _invoke("recover")

    assert recovered.exit_code == 0
    assert "Recovered tasks: 1" in recovered.output
    assert "orphaned-work status=pending" in _invoke("list").output


def test_watch_processes_queue_until_max_tasks(project_env: Path) -> None:
    _invoke("add", "Watched task", "--piece", "quick")

    watched = _invoke("watch", "--max-tasks", "1")

    assert watched.exit_code == 0, watched.output
    assert "Watch summary: total=1 succeeded=1 failed=0 recovered=0" in watched.output


def test_run_with_echo_cli_agent(project_env: Path, echo_agent) -> None:
    _invoke("add", "Echo through subprocess")

    run = _invoke("run")

    assert run.exit_code == 0, run.output
    store = TaskStore(_db_path(project_env))
    try:
        (task,) = store.list_tasks(status=TaskStatus.COMPLETED)
    finally:
        store.close()
    assert task.name == "echo-through-subprocess"
    assert any((project_env / ".piecework" / "sessions").iterdir())


def test_pieces_lists_builtin_and_project_pieces(project_env: Path) -> None:
    pieces_dir = project_env / ".piecework" / "pieces"
    pieces_dir.mkdir(parents=True)
    (pieces_dir / "local.yaml").write_text(
        "description: Local piece\nmovements:\n  - name: only\n",
        "utf-8",
    )

    result = _invoke("pieces")

    assert result.exit_code == 0
    assert "default: Plan, implement and review a change." in result.output
    assert "local: Local piece (movements=only max=10)" in result.output
    assert "quick:" in result.output
