"""Shared test fixtures."""

from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path

import pytest

from piecework.config import Settings
from piecework.engine.models import ProviderKind
from piecework.tasks.lifecycle import TaskLifecycleService
from piecework.tasks.store import TaskStore

_ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m piecework.agents.echo_agent --prompt-file {{prompt_file}}"
)


@pytest.fixture()
def project_env(tmp_path: Path, monkeypatch) -> Path:
    """Point settings at a temporary project with the mock provider."""

    monkeypatch.setenv("PIECEWORK_PROJECT_DIR", str(tmp_path))
    monkeypatch.setenv("PIECEWORK_DB_PATH", str(tmp_path / ".piecework" / "tasks.db"))
    monkeypatch.setenv("PIECEWORK_PROVIDER", "mock")
    monkeypatch.setenv("PIECEWORK_QUIET", "1")
    monkeypatch.setenv("PIECEWORK_RUN_POLL_INTERVAL_SECONDS", "0.05")
    monkeypatch.setenv("PIECEWORK_WATCH_POLL_INTERVAL_SECONDS", "0.05")
    return tmp_path


@pytest.fixture()
def echo_agent(monkeypatch):
    """Monkeypatch Settings.from_env to use the echo agent for claude."""
    original_from_env = Settings.from_env

    def _patched_from_env(db_path=None, project_dir=None):
        settings = original_from_env(db_path=db_path, project_dir=project_dir)
        providers = replace(
            settings.providers,
            provider=ProviderKind.CLAUDE,
            command_templates={ProviderKind.CLAUDE: _ECHO_AGENT_COMMAND_TEMPLATE},
        )
        return replace(settings, providers=providers)

    monkeypatch.setattr(Settings, "from_env", staticmethod(_patched_from_env))


@pytest.fixture()
def lifecycle(tmp_path: Path):
    store = TaskStore(tmp_path / "tasks.db")
    store.init_schema()
    try:
        yield TaskLifecycleService(store)
    finally:
        store.close()
