"""SQLModel ORM tables for the task store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel

__all__ = ["SQLModel", "TaskEventRow", "TaskRow"]


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_status_order", "status", "id"),
        Index(
            "idx_tasks_running_owner",
            "owner_pid",
            sqlite_where=text("status = 'running'"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)
    status: str = Field(index=True)
    content: str = Field(sa_column=Column(Text, nullable=False))
    piece: str | None = None
    use_worktree: bool = False
    worktree_target: str | None = None
    worktree_path: str | None = None
    branch: str | None = None
    issue: int | None = None
    start_movement: str | None = None
    retry_note: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    auto_pr: bool = False
    owner_pid: int | None = None
    response: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    failure_movement: str | None = None
    failure_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    failure_last_message: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
    )
    failed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEventRow(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]

    event_id: int | None = Field(default=None, primary_key=True)
    task_name: str = Field(
        sa_column=Column(
            ForeignKey("tasks.name", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
