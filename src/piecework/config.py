"""Runtime configuration for the engine, task store and runners."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from piecework.engine.loop_detector import DEFAULT_LOOP_THRESHOLD
from piecework.engine.models import (
    PermissionMode,
    PersonaProviderEntry,
    ProviderKind,
    ProviderPermissionProfile,
)
from piecework.engine.resolution import DEFAULT_PROVIDER_PERMISSION_PROFILES, ProviderTier

STATE_DIR_NAME = ".piecework"
PROJECT_CONFIG_FILE = "config.yaml"


@dataclass(slots=True)
class ProviderSettings:
    """Global agent provider settings."""

    provider: ProviderKind | None = None
    model: str | None = None
    command_templates: dict[ProviderKind, str] = field(default_factory=dict)
    persona_providers: dict[str, PersonaProviderEntry] = field(default_factory=dict)
    agent_timeout_seconds: float = 1_800.0


@dataclass(slots=True)
class RunnerSettings:
    """Task runner and watcher settings."""

    concurrency: int = 1
    run_poll_interval_seconds: float = 0.5
    watch_poll_interval_seconds: float = 2.0
    loop_threshold: int = DEFAULT_LOOP_THRESHOLD
    quiet: bool = False


@dataclass(slots=True)
class ProjectSettings:
    """Project tier read from ``.piecework/config.yaml``."""

    provider: ProviderKind | None = None
    model: str | None = None
    piece: str | None = None
    provider_profiles: dict[ProviderKind, ProviderPermissionProfile] = field(default_factory=dict)

    @property
    def tier(self) -> ProviderTier:
        return ProviderTier(provider=self.provider, model=self.model)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    project_dir: Path = Path()
    db_path: Path = Path(STATE_DIR_NAME) / "tasks.db"
    sqlite_busy_timeout_ms: int = 5_000
    providers: ProviderSettings = field(default_factory=ProviderSettings)
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    project: ProjectSettings = field(default_factory=ProjectSettings)
    global_profiles: dict[ProviderKind, ProviderPermissionProfile] = field(
        default_factory=lambda: dict(DEFAULT_PROVIDER_PERMISSION_PROFILES),
    )

    @property
    def state_dir(self) -> Path:
        return self.project_dir / STATE_DIR_NAME

    @property
    def sessions_dir(self) -> Path:
        return self.state_dir / "sessions"

    @property
    def pieces_dir(self) -> Path:
        return self.state_dir / "pieces"

    @property
    def global_tier(self) -> ProviderTier:
        return ProviderTier(provider=self.providers.provider, model=self.providers.model)

    @classmethod
    def from_env(cls, db_path: Path | None = None, project_dir: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        root = project_dir or Path(os.getenv("PIECEWORK_PROJECT_DIR", ".")).resolve()
        default_db = root / STATE_DIR_NAME / "tasks.db"
        env_db = os.getenv("PIECEWORK_DB_PATH")
        return cls(
            project_dir=root,
            db_path=db_path or (Path(env_db) if env_db else default_db),
            sqlite_busy_timeout_ms=int(os.getenv("PIECEWORK_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            providers=ProviderSettings(
                provider=_env_provider("PIECEWORK_PROVIDER"),
                model=os.getenv("PIECEWORK_MODEL") or None,
                command_templates=_collect_command_templates(),
                persona_providers=parse_persona_providers(
                    os.getenv("PIECEWORK_PERSONA_PROVIDERS", ""),
                ),
                agent_timeout_seconds=float(
                    os.getenv("PIECEWORK_AGENT_TIMEOUT_SECONDS", "1800"),
                ),
            ),
            runner=RunnerSettings(
                concurrency=int(os.getenv("PIECEWORK_CONCURRENCY", "1")),
                run_poll_interval_seconds=float(
                    os.getenv("PIECEWORK_RUN_POLL_INTERVAL_SECONDS", "0.5"),
                ),
                watch_poll_interval_seconds=float(
                    os.getenv("PIECEWORK_WATCH_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                loop_threshold=int(
                    os.getenv("PIECEWORK_LOOP_THRESHOLD", str(DEFAULT_LOOP_THRESHOLD)),
                ),
                quiet=_env_bool("PIECEWORK_QUIET", default=False),
            ),
            project=load_project_settings(root / STATE_DIR_NAME / PROJECT_CONFIG_FILE),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("PIECEWORK_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if self.runner.concurrency < 1:
            raise ValueError("PIECEWORK_CONCURRENCY must be >= 1.")
        if self.runner.run_poll_interval_seconds <= 0:
            raise ValueError("PIECEWORK_RUN_POLL_INTERVAL_SECONDS must be > 0.")
        if self.runner.watch_poll_interval_seconds <= 0:
            raise ValueError("PIECEWORK_WATCH_POLL_INTERVAL_SECONDS must be > 0.")
        if self.runner.loop_threshold < 1:
            raise ValueError("PIECEWORK_LOOP_THRESHOLD must be >= 1.")
        if self.providers.agent_timeout_seconds <= 0:
            raise ValueError("PIECEWORK_AGENT_TIMEOUT_SECONDS must be > 0.")


def parse_persona_providers(raw: str) -> dict[str, PersonaProviderEntry]:
    """Parse ``persona=provider[:model],...`` into persona entries."""

    entries: dict[str, PersonaProviderEntry] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                "Invalid PIECEWORK_PERSONA_PROVIDERS entry: "
                f"{token!r}. Expected format 'persona=provider[:model]'.",
            )
        persona, target = (value.strip() for value in token.split("=", 1))
        provider_raw, _, model = target.partition(":")
        if not persona or not provider_raw:
            raise ValueError(f"Invalid PIECEWORK_PERSONA_PROVIDERS entry: {token!r}")
        entries[persona] = PersonaProviderEntry(
            provider=_provider_value(provider_raw, source="PIECEWORK_PERSONA_PROVIDERS"),
            model=model.strip() or None,
        )
    return entries


def load_project_settings(path: Path) -> ProjectSettings:
    """Read the project config file; a missing file yields empty settings."""

    if not path.is_file():
        return ProjectSettings()
    data = yaml.safe_load(path.read_text("utf-8")) or {}
    if not isinstance(data, Mapping):
        raise ValueError(f"Project config must be a mapping: {path}")
    provider = data.get("provider")
    return ProjectSettings(
        provider=_provider_value(provider, source=str(path)) if provider else None,
        model=data.get("model") or None,
        piece=data.get("piece") or None,
        provider_profiles=_parse_profiles(data.get("provider_profiles") or {}, source=path),
    )


def _parse_profiles(
    raw: Mapping[str, Any],
    *,
    source: Path,
) -> dict[ProviderKind, ProviderPermissionProfile]:
    profiles: dict[ProviderKind, ProviderPermissionProfile] = {}
    for provider_name, body in raw.items():
        kind = _provider_value(provider_name, source=str(source))
        body = body or {}
        overrides = {
            str(movement): _permission_value(mode, source=source)
            for movement, mode in (body.get("movement_permission_overrides") or {}).items()
        }
        profiles[kind] = ProviderPermissionProfile(
            default_permission_mode=_permission_value(
                body.get("default_permission_mode", PermissionMode.EDIT.value),
                source=source,
            ),
            movement_permission_overrides=overrides,
        )
    return profiles


def _collect_command_templates() -> dict[ProviderKind, str]:
    templates: dict[ProviderKind, str] = {}
    for kind in (ProviderKind.CLAUDE, ProviderKind.CODEX):
        value = os.getenv(f"PIECEWORK_{kind.name}_COMMAND_TEMPLATE", "").strip()
        if value:
            templates[kind] = value
    return templates


def _env_provider(name: str) -> ProviderKind | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    return _provider_value(value, source=name)


def _provider_value(value: Any, *, source: str) -> ProviderKind:
    try:
        return ProviderKind(str(value).strip().lower())
    except ValueError as error:
        raise ValueError(f"Unsupported provider {value!r} in {source}") from error


def _permission_value(value: Any, *, source: Path) -> PermissionMode:
    try:
        return PermissionMode(str(value).strip().lower())
    except ValueError as error:
        raise ValueError(f"Unsupported permission mode {value!r} in {source}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
