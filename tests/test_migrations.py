from pathlib import Path

import allure
from sqlalchemy import text

from piecework.tasks.store import TaskStore

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    store = TaskStore(tmp_path / "nested" / "migrations.db")
    store.init_schema()
    store.init_schema()

    try:
        with store.engine.connect() as connection:
            version = connection.execute(
                text("SELECT version_num FROM alembic_version LIMIT 1"),
            ).scalar_one()
            tables = connection.execute(
                text(
                    "SELECT name FROM sqlite_master "
                    "WHERE type = 'table' AND name IN ('tasks', 'task_events') ORDER BY name",
                ),
            ).scalars().all()
            journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()
    finally:
        store.close()

    assert version == "20261019_0001"
    assert tables == ["task_events", "tasks"]
    assert str(journal_mode).lower() == "wal"
