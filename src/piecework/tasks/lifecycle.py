"""Task lifecycle operations on top of the task store."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable
from pathlib import Path

from piecework.errors import StaleRunningTask, TaskNotFound
from piecework.tasks.liveness import is_process_alive
from piecework.tasks.models import TaskCreate, TaskDetails, TaskRecord, TaskResult, TaskStatus
from piecework.tasks.store import TaskStore

logger = logging.getLogger(__name__)

MAX_TASK_NAME_LENGTH = 80
_NAME_UNSAFE = re.compile(r"[^a-z0-9]+")


class TaskLifecycleService:
    """Claim, complete, fail, requeue and recover tasks."""

    def __init__(
        self,
        store: TaskStore,
        *,
        pid: int | None = None,
        liveness: Callable[[int | None], bool] = is_process_alive,
    ) -> None:
        self.store = store
        self.pid = pid if pid is not None else os.getpid()
        self._liveness = liveness

    def add_task(self, content: str, options: TaskCreate | None = None) -> TaskRecord:
        """Queue a new pending task."""

        text = content.strip()
        if not text:
            raise ValueError("Task content must not be empty.")
        options = options or TaskCreate()
        if options.issue is not None and options.issue <= 0:
            raise ValueError(f"Issue number must be a positive integer, got {options.issue}.")
        record = self.store.insert_task(
            base_name=sanitize_task_name(first_line(text)),
            content=text,
            options=options,
        )
        logger.info("Task added: %s", record.name)
        return record

    def claim_next_tasks(self, count: int) -> list[TaskRecord]:
        """Claim up to count pending tasks for this process."""

        claimed: list[TaskRecord] = []
        while len(claimed) < count:
            task = self.store.claim_next_pending(owner_pid=self.pid)
            if task is None:
                break
            claimed.append(task)
        return claimed

    def complete_task(self, result: TaskResult) -> TaskRecord:
        if not result.success:
            raise ValueError("Cannot complete a failed task. Use fail_task() instead.")
        return self.store.complete_task(result)

    def fail_task(self, result: TaskResult) -> TaskRecord:
        return self.store.fail_task(result)

    def requeue_failed_task(
        self,
        ref: str,
        start_movement: str | None = None,
        retry_note: str | None = None,
    ) -> TaskRecord:
        """Move a failed task back to pending.

        ``ref`` is a task name or a path whose basename carries the name after
        its first underscore (``20260101_task-name``).
        """

        name = task_name_from_ref(ref)
        try:
            record = self.store.requeue_failed(
                name=name,
                start_movement=start_movement,
                retry_note=retry_note,
            )
        except TaskNotFound as error:
            raise TaskNotFound(f"Failed task not found: {ref}") from error
        logger.info("Task requeued: %s", name)
        return record

    def recover_interrupted_running_tasks(self) -> int:
        """Requeue running tasks whose owner process is gone."""

        recovered = 0
        for task in self.store.list_tasks(status=TaskStatus.RUNNING):
            if self._liveness(task.owner_pid):
                continue
            stale = StaleRunningTask(task.name, task.owner_pid)
            if self.store.requeue_running(name=task.name, owner_pid=task.owner_pid):
                logger.warning("%s: requeued", stale)
                recovered += 1
        return recovered

    def mark_interrupted(self, names: list[str], *, signal_name: str) -> None:
        """Record an interruption on running tasks owned by this process."""

        for name in names:
            self.store.add_task_event(
                name=name,
                event_type="interrupted",
                details={"signal": signal_name, "owner_pid": self.pid},
            )

    def delete_task(self, name: str, status: TaskStatus) -> None:
        if status is TaskStatus.RUNNING:
            raise ValueError("Running tasks cannot be deleted.")
        self.store.delete_task(name=name, status=status)

    def delete_pending_task(self, name: str) -> None:
        self.delete_task(name, TaskStatus.PENDING)

    def delete_completed_task(self, name: str) -> None:
        self.delete_task(name, TaskStatus.COMPLETED)

    def delete_failed_task(self, name: str) -> None:
        self.delete_task(name, TaskStatus.FAILED)

    def list_tasks(
        self,
        status: TaskStatus | None = None,
        limit: int | None = None,
    ) -> list[TaskRecord]:
        return self.store.list_tasks(status=status, limit=limit)

    def get_task_details(self, name: str) -> TaskDetails:
        details = self.store.get_task_details(name)
        if details is None:
            raise TaskNotFound(f"Task not found: {name}")
        return details


def first_line(content: str) -> str:
    for line in content.splitlines():
        if line.strip():
            return line.strip()
    return ""


def sanitize_task_name(text: str) -> str:
    """Lowercase slug limited to MAX_TASK_NAME_LENGTH characters."""

    slug = _NAME_UNSAFE.sub("-", text.lower()).strip("-")
    slug = slug[:MAX_TASK_NAME_LENGTH].strip("-")
    return slug or "task"


def task_name_from_ref(ref: str) -> str:
    value = ref.strip()
    if "/" not in value and os.sep not in value:
        return value
    basename = Path(value).name
    if "_" in basename:
        return basename.split("_", 1)[1]
    return basename
