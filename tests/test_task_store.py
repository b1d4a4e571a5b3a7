from __future__ import annotations

import multiprocessing
import queue
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session

from piecework.errors import TaskNotFound, TaskStoreWriteFailed
from piecework.storage.sqlmodel_models import TaskRow
from piecework.tasks.lifecycle import (
    MAX_TASK_NAME_LENGTH,
    TaskLifecycleService,
    sanitize_task_name,
    task_name_from_ref,
)
from piecework.tasks.models import TaskCreate, TaskRecord, TaskResult, TaskStatus
from piecework.tasks.store import TaskStore

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Task Store Reliability"),
]


def _result(task: TaskRecord, *, success: bool, **fields) -> TaskResult:
    now = datetime.now(tz=UTC)
    return TaskResult(
        task=task,
        success=success,
        response=fields.pop("response", "Task completed" if success else "Task failed"),
        started_at=now,
        completed_at=now,
        **fields,
    )


def _claim_until_empty(  # pragma: no cover - executed in child process
    db_path: str,
    start_event: multiprocessing.synchronize.Event,
    result_queue: multiprocessing.queues.Queue[tuple[str, str]],
) -> None:
    store = TaskStore(Path(db_path))
    try:
        start_event.wait(timeout=5)
        while True:
            task = store.claim_next_pending(owner_pid=multiprocessing.current_process().pid)
            if task is None:
                break
            result_queue.put(("ok", task.name))
        result_queue.put(("done", ""))
    except Exception as error:  # noqa: BLE001
        result_queue.put(("error", str(error)))
    finally:
        store.close()


def _claim_once_thread(
    db_path: Path,
    owner_pid: int,
    start_event: threading.Event,
    result_queue: queue.Queue[str | None],
) -> None:
    store = TaskStore(db_path)
    try:
        start_event.wait(timeout=2)
        task = store.claim_next_pending(owner_pid=owner_pid)
        result_queue.put(task.name if task is not None else None)
    finally:
        store.close()


def test_add_task_sanitizes_names_and_resolves_collisions(lifecycle: TaskLifecycleService) -> None:
    first = lifecycle.add_task("  Add a Health endpoint!\nwith details")
    second = lifecycle.add_task("Add a health endpoint")
    third = lifecycle.add_task("add  a health endpoint??")

    assert first.name == "add-a-health-endpoint"
    assert second.name == "add-a-health-endpoint-1"
    assert third.name == "add-a-health-endpoint-2"
    assert first.status is TaskStatus.PENDING
    assert first.content == "Add a Health endpoint!\nwith details"
    assert first.owner_pid is None


def test_add_task_keeps_options_and_rejects_bad_input(lifecycle: TaskLifecycleService) -> None:
    record = lifecycle.add_task(
        "Fix login",
        TaskCreate(
            piece="quick",
            worktree="../login-clone",
            branch="fix/login",
            issue=42,
            start_movement="implement",
            auto_pr=True,
        ),
    )

    assert record.piece == "quick"
    assert record.worktree == "../login-clone"
    assert record.branch == "fix/login"
    assert record.issue == 42
    assert record.start_movement == "implement"
    assert record.auto_pr is True
    assert lifecycle.add_task("Use clone", TaskCreate(worktree=True)).worktree is True
    with pytest.raises(ValueError, match="must not be empty"):
        lifecycle.add_task("   ")
    with pytest.raises(ValueError, match="positive integer"):
        lifecycle.add_task("Bad issue", TaskCreate(issue=0))


def test_sanitize_and_reference_helpers() -> None:
    assert sanitize_task_name("Hello, World") == "hello-world"
    assert sanitize_task_name("!!!") == "task"
    assert len(sanitize_task_name("word " * 40)) <= MAX_TASK_NAME_LENGTH
    assert task_name_from_ref("fix-login") == "fix-login"
    assert task_name_from_ref("reports/20260101_fix-login") == "fix-login"


def test_claim_order_and_running_invariants(lifecycle: TaskLifecycleService) -> None:
    names = [lifecycle.add_task(f"Task {index}").name for index in range(3)]

    claimed = lifecycle.claim_next_tasks(2)

    assert [task.name for task in claimed] == names[:2]
    for task in claimed:
        assert task.status is TaskStatus.RUNNING
        assert task.owner_pid == lifecycle.pid
        assert task.started_at is not None
    pending = lifecycle.list_tasks(status=TaskStatus.PENDING)
    assert [task.name for task in pending] == names[2:]
    assert lifecycle.claim_next_tasks(5)[0].name == names[2]
    assert lifecycle.claim_next_tasks(1) == []


def test_complete_and_fail_record_outcomes(lifecycle: TaskLifecycleService) -> None:
    lifecycle.add_task("First")
    lifecycle.add_task("Second")
    first, second = lifecycle.claim_next_tasks(2)

    completed = lifecycle.complete_task(_result(first, success=True, branch="piecework/first"))
    failed = lifecycle.fail_task(
        _result(
            second,
            success=False,
            failed_movement="review",
            error="Max movements reached (12)",
            last_message="still failing",
        ),
    )

    assert completed.status is TaskStatus.COMPLETED
    assert completed.owner_pid is None
    assert completed.completed_at is not None
    assert completed.response == "Task completed"
    assert completed.branch == "piecework/first"
    assert failed.status is TaskStatus.FAILED
    assert failed.failure is not None
    assert failed.failure.movement == "review"
    assert failed.failure.error == "Max movements reached (12)"
    assert failed.failure.last_message == "still failing"
    assert failed.failure.failed_at is not None


def test_complete_rejects_failed_result_and_non_running_task(
    lifecycle: TaskLifecycleService,
) -> None:
    pending = lifecycle.add_task("Not claimed")

    with pytest.raises(ValueError, match="Use fail_task"):
        lifecycle.complete_task(_result(pending, success=False))
    with pytest.raises(TaskNotFound):
        lifecycle.complete_task(_result(pending, success=True))
    with pytest.raises(TaskNotFound):
        lifecycle.fail_task(_result(pending, success=False))


def test_requeue_appends_retry_note_and_clears_failure(lifecycle: TaskLifecycleService) -> None:
    lifecycle.add_task("Flaky work", TaskCreate(retry_note="first note"))
    (task,) = lifecycle.claim_next_tasks(1)
    lifecycle.fail_task(_result(task, success=False, failed_movement="implement", error="boom"))

    record = lifecycle.requeue_failed_task(
        task.name,
        start_movement="review",
        retry_note="second note",
    )

    assert record.status is TaskStatus.PENDING
    assert record.start_movement == "review"
    assert record.retry_note == "first note\n\nsecond note"
    assert record.failure is None
    assert record.owner_pid is None
    assert record.started_at is None
    with pytest.raises(TaskNotFound, match="Failed task not found: flaky-work"):
        lifecycle.requeue_failed_task("flaky-work")
    with pytest.raises(TaskNotFound, match="Failed task not found: missing"):
        lifecycle.requeue_failed_task("missing")


def test_recovery_requeues_only_dead_owners(tmp_path: Path) -> None:
    store = TaskStore(tmp_path / "tasks.db")
    store.init_schema()
    try:
        live = TaskLifecycleService(store)
        live.add_task("Alive owner")
        live.claim_next_tasks(1)

        assert live.recover_interrupted_running_tasks() == 0

        dead = TaskLifecycleService(store, pid=999_999, liveness=lambda _pid: False)
        dead.add_task("Dead owner")
        dead.claim_next_tasks(1)

        assert dead.recover_interrupted_running_tasks() == 2
        assert all(task.status is TaskStatus.PENDING for task in store.list_tasks())
        details = live.get_task_details("dead-owner")
        assert [event.event_type for event in details.events] == [
            "added",
            "claimed",
            "recovered",
        ]
    finally:
        store.close()


def test_mark_interrupted_keeps_task_running(lifecycle: TaskLifecycleService) -> None:
    lifecycle.add_task("Long job")
    (task,) = lifecycle.claim_next_tasks(1)

    lifecycle.mark_interrupted([task.name], signal_name="SIGINT")

    details = lifecycle.get_task_details(task.name)
    assert details.task.status is TaskStatus.RUNNING
    assert details.events[-1].event_type == "interrupted"
    assert details.events[-1].details == {"owner_pid": lifecycle.pid, "signal": "SIGINT"}


def test_delete_requires_matching_status(lifecycle: TaskLifecycleService) -> None:
    lifecycle.add_task("Drop me")
    lifecycle.add_task("Busy")

    with pytest.raises(TaskNotFound):
        lifecycle.delete_completed_task("drop-me")
    lifecycle.delete_pending_task("drop-me")
    assert [task.name for task in lifecycle.list_tasks()] == ["busy"]
    with pytest.raises(ValueError, match="Running tasks cannot be deleted"):
        lifecycle.delete_task("busy", TaskStatus.RUNNING)
    with pytest.raises(TaskNotFound, match="Task not found: ghost"):
        lifecycle.get_task_details("ghost")


def test_concurrent_thread_claims_never_share_a_task(tmp_path: Path) -> None:
    db_path = tmp_path / "claim-threads.db"
    setup = TaskStore(db_path)
    setup.init_schema()
    service = TaskLifecycleService(setup)
    service.add_task("Only task")
    setup.close()

    start_event = threading.Event()
    results: queue.Queue[str | None] = queue.Queue()
    threads = [
        threading.Thread(
            target=_claim_once_thread,
            args=(db_path, 1000 + index, start_event, results),
        )
        for index in range(4)
    ]
    for thread in threads:
        thread.start()
    start_event.set()
    for thread in threads:
        thread.join(timeout=10)

    claimed = [results.get_nowait() for _ in threads]
    assert sorted(name for name in claimed if name is not None) == ["only-task"]
    assert claimed.count(None) == 3


def test_claim_race_is_safe_across_processes(tmp_path: Path) -> None:
    db_path = tmp_path / "claim-processes.db"
    store = TaskStore(db_path)
    store.init_schema()
    service = TaskLifecycleService(store)
    expected = sorted(service.add_task(f"Queued {index}").name for index in range(6))
    store.close()

    context = multiprocessing.get_context("spawn")
    start_event = context.Event()
    result_queue: multiprocessing.queues.Queue[tuple[str, str]] = context.Queue()
    processes = [
        context.Process(target=_claim_until_empty, args=(str(db_path), start_event, result_queue))
        for _ in range(2)
    ]
    for process in processes:
        process.start()
    start_event.set()

    claimed: list[str] = []
    finished = 0
    while finished < len(processes):
        status, value = result_queue.get(timeout=20)
        assert status != "error", value
        if status == "done":
            finished += 1
        else:
            claimed.append(value)
    for process in processes:
        process.join(timeout=10)
        assert process.exitcode == 0

    assert sorted(claimed) == expected
    verify = TaskStore(db_path)
    try:
        assert {task.status for task in verify.list_tasks()} == {TaskStatus.RUNNING}
    finally:
        verify.close()


def _failing_commit(self: Session) -> None:
    raise OperationalError("COMMIT", {}, sqlite3.OperationalError("disk I/O error"))


def _flush_raising(monkeypatch, message: str, *, times: int | None = None) -> list[int]:
    """Make flushes that insert a task row raise IntegrityError(message)."""

    original = Session.flush
    raised: list[int] = []

    def flush(self: Session, objects=None) -> None:
        pending_task = any(isinstance(obj, TaskRow) for obj in self.new)
        if pending_task and (times is None or len(raised) < times):
            raised.append(1)
            raise IntegrityError("INSERT INTO tasks", {}, sqlite3.IntegrityError(message))
        original(self, objects)

    monkeypatch.setattr(Session, "flush", flush)
    return raised


def test_add_task_records_added_event(lifecycle: TaskLifecycleService) -> None:
    record = lifecycle.add_task("First change", TaskCreate(piece="quick"))

    details = lifecycle.get_task_details(record.name)
    assert [event.event_type for event in details.events] == ["added"]
    assert details.events[0].status_to is TaskStatus.PENDING
    assert details.events[0].details == {"piece": "quick"}


def test_add_task_retries_concurrent_name_collision(
    lifecycle: TaskLifecycleService,
    monkeypatch,
) -> None:
    raised = _flush_raising(monkeypatch, "UNIQUE constraint failed: tasks.name", times=1)

    record = lifecycle.add_task("First change")

    assert raised == [1]
    assert record.name == "first-change"
    assert [task.name for task in lifecycle.list_tasks()] == ["first-change"]


def test_add_task_gives_up_after_repeated_collisions(
    lifecycle: TaskLifecycleService,
    monkeypatch,
) -> None:
    raised = _flush_raising(monkeypatch, "UNIQUE constraint failed: tasks.name")

    with pytest.raises(TaskStoreWriteFailed, match="no free name"):
        lifecycle.add_task("First change")

    assert len(raised) == 5
    monkeypatch.undo()
    assert lifecycle.list_tasks() == []


def test_add_task_surfaces_other_integrity_errors(
    lifecycle: TaskLifecycleService,
    monkeypatch,
) -> None:
    raised = _flush_raising(monkeypatch, "NOT NULL constraint failed: tasks.content")

    with pytest.raises(TaskStoreWriteFailed, match="NOT NULL constraint failed"):
        lifecycle.add_task("First change")

    assert raised == [1]
    monkeypatch.undo()
    assert lifecycle.list_tasks() == []


def test_write_failures_surface_and_leave_state_unchanged(
    lifecycle: TaskLifecycleService,
    monkeypatch,
) -> None:
    lifecycle.add_task("First change")
    lifecycle.add_task("Second change")
    (running,) = lifecycle.claim_next_tasks(1)

    monkeypatch.setattr(Session, "commit", _failing_commit)
    with pytest.raises(TaskStoreWriteFailed, match="disk I/O error"):
        lifecycle.add_task("Third change")
    with pytest.raises(TaskStoreWriteFailed, match="disk I/O error"):
        lifecycle.claim_next_tasks(1)
    with pytest.raises(TaskStoreWriteFailed, match="disk I/O error"):
        lifecycle.fail_task(_result(running, success=False, error="boom"))
    monkeypatch.undo()

    statuses = {task.name: task.status for task in lifecycle.list_tasks()}
    assert statuses == {
        "first-change": TaskStatus.RUNNING,
        "second-change": TaskStatus.PENDING,
    }
    events = lifecycle.get_task_details("first-change").events
    assert [event.event_type for event in events] == ["added", "claimed"]
