"""Domain models for the durable task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class TaskCreate:
    """Optional task fields accepted by add_task."""

    piece: str | None = None
    worktree: bool | str | None = None
    branch: str | None = None
    issue: int | None = None
    start_movement: str | None = None
    retry_note: str | None = None
    auto_pr: bool = False


@dataclass(slots=True)
class TaskFailure:
    """Failure details persisted with a failed task."""

    movement: str | None
    error: str
    last_message: str | None
    failed_at: datetime | None = None


@dataclass(slots=True)
class TaskRecord:
    """Readable task view for CLI, runner and watcher."""

    name: str
    status: TaskStatus
    content: str
    created_at: datetime
    piece: str | None = None
    worktree: bool | str | None = None
    worktree_path: str | None = None
    branch: str | None = None
    issue: int | None = None
    start_movement: str | None = None
    retry_note: str | None = None
    auto_pr: bool = False
    owner_pid: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    response: str | None = None
    failure: TaskFailure | None = None


@dataclass(slots=True)
class TaskResult:
    """Execution outcome handed to complete_task/fail_task."""

    task: TaskRecord
    success: bool
    response: str
    started_at: datetime
    completed_at: datetime
    failed_movement: str | None = None
    error: str | None = None
    last_message: str | None = None
    worktree_path: str | None = None
    branch: str | None = None
    interrupted: bool = False


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for the audit trail."""

    event_id: int
    task_name: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskRecord
    events: list[TaskEventView]
