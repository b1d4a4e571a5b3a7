"""Create task store tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tasks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("piece", sa.String(), nullable=True),
        sa.Column("use_worktree", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("worktree_target", sa.String(), nullable=True),
        sa.Column("worktree_path", sa.String(), nullable=True),
        sa.Column("branch", sa.String(), nullable=True),
        sa.Column("issue", sa.Integer(), nullable=True),
        sa.Column("start_movement", sa.String(), nullable=True),
        sa.Column("retry_note", sa.Text(), nullable=True),
        sa.Column("auto_pr", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("owner_pid", sa.Integer(), nullable=True),
        sa.Column("response", sa.Text(), nullable=True),
        sa.Column("failure_movement", sa.String(), nullable=True),
        sa.Column("failure_error", sa.Text(), nullable=True),
        sa.Column("failure_last_message", sa.Text(), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tasks_name", "tasks", ["name"], unique=True)
    op.create_index("ix_tasks_status", "tasks", ["status"])
    op.create_index("idx_tasks_status_order", "tasks", ["status", "id"])
    op.create_index(
        "idx_tasks_running_owner",
        "tasks",
        ["owner_pid"],
        sqlite_where=sa.text("status = 'running'"),
    )

    op.create_table(
        "task_events",
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("task_name", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_name"], ["tasks.name"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_task_events_task_name", "task_events", ["task_name"])
    op.create_index("ix_task_events_event_type", "task_events", ["event_type"])


def downgrade() -> None:
    op.drop_index("ix_task_events_event_type", table_name="task_events")
    op.drop_index("ix_task_events_task_name", table_name="task_events")
    op.drop_table("task_events")
    op.drop_index("idx_tasks_running_owner", table_name="tasks")
    op.drop_index("idx_tasks_status_order", table_name="tasks")
    op.drop_index("ix_tasks_status", table_name="tasks")
    op.drop_index("ix_tasks_name", table_name="tasks")
    op.drop_table("tasks")
