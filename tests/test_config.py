from __future__ import annotations

from pathlib import Path

import allure
import pytest

from piecework.config import (
    RunnerSettings,
    Settings,
    load_project_settings,
    parse_persona_providers,
)
from piecework.engine.models import PermissionMode, ProviderKind

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings"),
]


def test_from_env_reads_provider_runner_and_paths(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("PIECEWORK_PROJECT_DIR", str(tmp_path))
    monkeypatch.delenv("PIECEWORK_DB_PATH", raising=False)
    monkeypatch.setenv("PIECEWORK_PROVIDER", "Codex")
    monkeypatch.setenv("PIECEWORK_MODEL", "gpt-5-codex")
    monkeypatch.setenv("PIECEWORK_CONCURRENCY", "3")
    monkeypatch.setenv("PIECEWORK_QUIET", "yes")
    monkeypatch.setenv("PIECEWORK_CLAUDE_COMMAND_TEMPLATE", "claude -p {prompt}")
    monkeypatch.setenv("PIECEWORK_PERSONA_PROVIDERS", "reviewer=claude:opus, coder=mock")

    settings = Settings.from_env()

    assert settings.project_dir == tmp_path.resolve()
    assert settings.db_path == tmp_path.resolve() / ".piecework" / "tasks.db"
    assert settings.sessions_dir == tmp_path.resolve() / ".piecework" / "sessions"
    assert settings.providers.provider is ProviderKind.CODEX
    assert settings.global_tier.model == "gpt-5-codex"
    assert settings.providers.command_templates == {ProviderKind.CLAUDE: "claude -p {prompt}"}
    assert settings.providers.persona_providers["reviewer"].model == "opus"
    assert settings.providers.persona_providers["coder"].provider is ProviderKind.MOCK
    assert settings.runner.concurrency == 3
    assert settings.runner.quiet is True


def test_persona_provider_parsing_rejects_malformed_entries() -> None:
    assert parse_persona_providers(" , ") == {}
    with pytest.raises(ValueError, match="Expected format"):
        parse_persona_providers("reviewer")
    with pytest.raises(ValueError, match="Unsupported provider"):
        parse_persona_providers("reviewer=gemini")


def test_project_config_file_sets_project_tier(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "provider: claude\n"
        "model: sonnet\n"
        "piece: quick\n"
        "provider_profiles:\n"
        "  claude:\n"
        "    default_permission_mode: readonly\n"
        "    movement_permission_overrides:\n"
        "      implement: full\n",
        "utf-8",
    )

    project = load_project_settings(path)

    assert project.tier.provider is ProviderKind.CLAUDE
    assert project.tier.model == "sonnet"
    assert project.piece == "quick"
    profile = project.provider_profiles[ProviderKind.CLAUDE]
    assert profile.default_permission_mode is PermissionMode.READONLY
    assert profile.movement_permission_overrides == {"implement": PermissionMode.FULL}
    assert load_project_settings(tmp_path / "missing.yaml").provider is None


def test_project_config_rejects_unknown_permission(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("provider_profiles:\n  codex:\n    default_permission_mode: root\n", "utf-8")

    with pytest.raises(ValueError, match="Unsupported permission mode"):
        load_project_settings(path)


def test_validate_rejects_out_of_range_values() -> None:
    with pytest.raises(ValueError, match="PIECEWORK_CONCURRENCY"):
        Settings(runner=RunnerSettings(concurrency=0)).validate()
    with pytest.raises(ValueError, match="PIECEWORK_LOOP_THRESHOLD"):
        Settings(runner=RunnerSettings(loop_threshold=0)).validate()
    Settings().validate()


def test_invalid_boolean_env_value_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("PIECEWORK_QUIET", "sometimes")

    with pytest.raises(ValueError, match="Invalid boolean value for PIECEWORK_QUIET"):
        Settings.from_env()
