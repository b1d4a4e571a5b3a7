"""Durable task store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from piecework.errors import TaskNotFound, TaskStoreWriteFailed
from piecework.storage.alembic_runner import upgrade_head
from piecework.storage.common import build_sqlite_engine, to_db_datetime, to_utc_aware, utc_now
from piecework.storage.sqlmodel_models import TaskEventRow, TaskRow
from piecework.tasks.models import (
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskFailure,
    TaskRecord,
    TaskResult,
    TaskStatus,
)

logger = logging.getLogger(__name__)

_INSERT_ATTEMPTS = 5


class TaskStore:
    """Queue persistence facade.

    Every state change is one SQLite transaction. Transitions are conditional
    updates keyed on the expected current status, so a concurrent writer that
    got there first turns this writer's update into a no-op that is retried or
    reported instead of overwritten.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def insert_task(self, *, base_name: str, content: str, options: TaskCreate) -> TaskRecord:
        """Create a pending task under a unique name derived from base_name."""

        for _attempt in range(_INSERT_ATTEMPTS):
            now = utc_now()
            with self._write_session() as session:
                existing = set(
                    session.exec(
                        select(TaskRow.name).where(
                            col(TaskRow.name).startswith(base_name),
                        ),
                    ).all(),
                )
                name = _unique_name(base_name, existing)
                worktree = options.worktree
                row = TaskRow(
                    name=name,
                    status=TaskStatus.PENDING.value,
                    content=content,
                    piece=options.piece,
                    use_worktree=worktree is not None and worktree is not False,
                    worktree_target=worktree if isinstance(worktree, str) else None,
                    branch=options.branch,
                    issue=options.issue,
                    start_movement=options.start_movement,
                    retry_note=options.retry_note,
                    auto_pr=options.auto_pr,
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                )
                session.add(row)
                try:
                    session.flush()
                except IntegrityError as error:
                    session.rollback()
                    if not _is_name_collision(error):
                        raise
                    logger.debug("Task name %s taken concurrently, retrying", name)
                    continue
                self._add_event(
                    session=session,
                    task_name=name,
                    event_type="added",
                    status_from=None,
                    status_to=TaskStatus.PENDING,
                    details={"piece": options.piece} if options.piece else {},
                )
                session.commit()
                session.refresh(row)
                return _to_record(row)
        raise TaskStoreWriteFailed(
            f"Task store write failed: no free name for {base_name} "
            f"after {_INSERT_ATTEMPTS} attempts",
        )

    def claim_next_pending(self, *, owner_pid: int) -> TaskRecord | None:
        """Atomically move the oldest pending task to running."""

        while True:
            now = utc_now()
            with self._write_session() as session:
                candidate = session.exec(
                    select(TaskRow)
                    .where(TaskRow.status == TaskStatus.PENDING.value)
                    .order_by(col(TaskRow.id).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(TaskRow)
                    .where(
                        col(TaskRow.name) == candidate.name,
                        col(TaskRow.status) == TaskStatus.PENDING.value,
                    )
                    .values(
                        status=TaskStatus.RUNNING.value,
                        owner_pid=owner_pid,
                        started_at=to_db_datetime(now),
                        completed_at=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                self._add_event(
                    session=session,
                    task_name=candidate.name,
                    event_type="claimed",
                    status_from=TaskStatus.PENDING,
                    status_to=TaskStatus.RUNNING,
                    details={"owner_pid": owner_pid},
                )
                session.commit()
                claimed = session.exec(
                    select(TaskRow).where(TaskRow.name == candidate.name),
                ).one()
                return _to_record(claimed)

    def complete_task(self, result: TaskResult) -> TaskRecord:
        """Mark a running task as completed."""

        name = result.task.name
        with self._write_session() as session:
            update = sa_update(TaskRow).where(
                col(TaskRow.name) == name,
                col(TaskRow.status) == TaskStatus.RUNNING.value,
            )
            values: dict[str, object] = {
                "status": TaskStatus.COMPLETED.value,
                "owner_pid": None,
                "response": result.response,
                "completed_at": to_db_datetime(result.completed_at),
                "updated_at": to_db_datetime(utc_now()),
            }
            if result.worktree_path is not None:
                values["worktree_path"] = result.worktree_path
            if result.branch is not None:
                values["branch"] = result.branch
            if session.exec(update.values(**values)).rowcount != 1:
                session.rollback()
                raise TaskNotFound(f"Task not found: {name}")
            self._add_event(
                session=session,
                task_name=name,
                event_type="completed",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.COMPLETED,
                details={"response": result.response},
            )
            session.commit()
            return _to_record(self._get_row(session=session, name=name))

    def fail_task(self, result: TaskResult) -> TaskRecord:
        """Mark a running task as failed with its failure details."""

        name = result.task.name
        now = utc_now()
        with self._write_session() as session:
            values: dict[str, object] = {
                "status": TaskStatus.FAILED.value,
                "owner_pid": None,
                "response": result.response,
                "failure_movement": result.failed_movement,
                "failure_error": result.error or result.response,
                "failure_last_message": result.last_message,
                "failed_at": to_db_datetime(now),
                "completed_at": to_db_datetime(result.completed_at),
                "updated_at": to_db_datetime(now),
            }
            if result.worktree_path is not None:
                values["worktree_path"] = result.worktree_path
            if result.branch is not None:
                values["branch"] = result.branch
            outcome = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.name) == name,
                    col(TaskRow.status) == TaskStatus.RUNNING.value,
                )
                .values(**values),
            )
            if outcome.rowcount != 1:
                session.rollback()
                raise TaskNotFound(f"Task not found: {name}")
            self._add_event(
                session=session,
                task_name=name,
                event_type="failed",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.FAILED,
                details={
                    "movement": result.failed_movement,
                    "error": result.error or result.response,
                },
            )
            session.commit()
            return _to_record(self._get_row(session=session, name=name))

    def requeue_failed(
        self,
        *,
        name: str,
        start_movement: str | None,
        retry_note: str | None,
    ) -> TaskRecord:
        """Move a failed task back to pending, appending the retry note."""

        with self._write_session() as session:
            row = session.exec(
                select(TaskRow).where(
                    TaskRow.name == name,
                    TaskRow.status == TaskStatus.FAILED.value,
                ),
            ).one_or_none()
            if row is None:
                raise TaskNotFound(f"Failed task not found: {name}")

            note = _append_note(row.retry_note, retry_note)
            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.name) == name,
                    col(TaskRow.status) == TaskStatus.FAILED.value,
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    start_movement=start_movement or row.start_movement,
                    retry_note=note,
                    owner_pid=None,
                    started_at=None,
                    completed_at=None,
                    response=None,
                    failure_movement=None,
                    failure_error=None,
                    failure_last_message=None,
                    failed_at=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskNotFound(
                    "Task state changed concurrently while requeueing; "
                    f"please retry command (task={name}).",
                )
            self._add_event(
                session=session,
                task_name=name,
                event_type="requeued",
                status_from=TaskStatus.FAILED,
                status_to=TaskStatus.PENDING,
                details={"start_movement": start_movement, "retry_note": retry_note},
            )
            session.commit()
            return _to_record(self._get_row(session=session, name=name))

    def requeue_running(self, *, name: str, owner_pid: int | None) -> bool:
        """Return a running task to pending if it is still owned by owner_pid."""

        with self._write_session() as session:
            owner_clause = (
                col(TaskRow.owner_pid).is_(None)
                if owner_pid is None
                else col(TaskRow.owner_pid) == owner_pid
            )
            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.name) == name,
                    col(TaskRow.status) == TaskStatus.RUNNING.value,
                    owner_clause,
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    owner_pid=None,
                    started_at=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_name=name,
                event_type="recovered",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.PENDING,
                details={"owner_pid": owner_pid},
            )
            session.commit()
            return True

    def delete_task(self, *, name: str, status: TaskStatus) -> None:
        """Delete one task in the given status."""

        with self._write_session() as session:
            result = session.exec(
                sa_delete(TaskRow).where(
                    col(TaskRow.name) == name,
                    col(TaskRow.status) == status.value,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskNotFound(f"Task not found: {name} (status={status.value})")
            session.commit()

    def add_task_event(
        self,
        *,
        name: str,
        event_type: str,
        details: dict[str, object],
    ) -> None:
        """Append an audit event without changing task status."""

        with self._write_session() as session:
            row = session.exec(select(TaskRow).where(TaskRow.name == name)).one_or_none()
            if row is None:
                return
            status = TaskStatus(row.status)
            self._add_event(
                session=session,
                task_name=name,
                event_type=event_type,
                status_from=status,
                status_to=status,
                details=details,
            )
            session.commit()

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int | None = None,
    ) -> list[TaskRecord]:
        """List tasks in queue order, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(TaskRow).order_by(col(TaskRow.id).asc())
            if status is not None:
                statement = statement.where(TaskRow.status == status.value)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_record(row) for row in rows]

    def get_task(self, name: str) -> TaskRecord | None:
        with Session(self.engine) as session:
            row = session.exec(select(TaskRow).where(TaskRow.name == name)).one_or_none()
        return _to_record(row) if row is not None else None

    def get_task_details(self, name: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            row = session.exec(select(TaskRow).where(TaskRow.name == name)).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(TaskEventRow)
                .where(TaskEventRow.task_name == name)
                .order_by(col(TaskEventRow.event_id).asc()),
            ).all()
            events = [
                TaskEventView(
                    event_id=event_row.event_id or 0,
                    task_name=event_row.task_name,
                    event_type=event_row.event_type,
                    status_from=(
                        TaskStatus(event_row.status_from) if event_row.status_from else None
                    ),
                    status_to=TaskStatus(event_row.status_to) if event_row.status_to else None,
                    created_at=to_utc_aware(event_row.created_at) or utc_now(),
                    details=json.loads(event_row.details_json) if event_row.details_json else {},
                )
                for event_row in event_rows
            ]
            return TaskDetails(task=_to_record(row), events=events)

    @contextmanager
    def _write_session(self) -> Iterator[Session]:
        with Session(self.engine) as session:
            try:
                yield session
            except SQLAlchemyError as error:
                session.rollback()
                raise TaskStoreWriteFailed(f"Task store write failed: {error}") from error

    def _get_row(self, *, session: Session, name: str) -> TaskRow:
        row = session.exec(select(TaskRow).where(TaskRow.name == name)).one_or_none()
        if row is None:
            raise TaskNotFound(f"Task not found: {name}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_name: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEventRow(
                task_name=task_name,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _is_name_collision(error: IntegrityError) -> bool:
    message = str(error.orig)
    return "UNIQUE constraint failed" in message and "tasks.name" in message


def _unique_name(base: str, existing: set[str]) -> str:
    candidate = base
    counter = 1
    while candidate in existing:
        candidate = f"{base}-{counter}"
        counter += 1
    return candidate


def _append_note(existing: str | None, note: str | None) -> str | None:
    if not note:
        return existing
    if not existing:
        return note
    return f"{existing}\n\n{note}"


def _to_record(row: TaskRow) -> TaskRecord:
    worktree: bool | str | None = None
    if row.worktree_target:
        worktree = row.worktree_target
    elif row.use_worktree:
        worktree = True
    failure = None
    if row.status == TaskStatus.FAILED.value:
        failure = TaskFailure(
            movement=row.failure_movement,
            error=row.failure_error or "",
            last_message=row.failure_last_message,
            failed_at=to_utc_aware(row.failed_at),
        )
    return TaskRecord(
        name=row.name,
        status=TaskStatus(row.status),
        content=row.content,
        created_at=to_utc_aware(row.created_at) or utc_now(),
        piece=row.piece,
        worktree=worktree,
        worktree_path=row.worktree_path,
        branch=row.branch,
        issue=row.issue,
        start_movement=row.start_movement,
        retry_note=row.retry_note,
        auto_pr=row.auto_pr,
        owner_pid=row.owner_pid,
        started_at=to_utc_aware(row.started_at),
        completed_at=to_utc_aware(row.completed_at),
        response=row.response,
        failure=failure,
    )
