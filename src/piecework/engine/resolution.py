"""Provider, model and permission precedence resolution."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from piecework.engine.models import (
    Movement,
    PermissionMode,
    PersonaProviderEntry,
    ProviderKind,
    ProviderPermissionProfile,
)

DEFAULT_PROVIDER_PERMISSION_PROFILES: dict[ProviderKind, ProviderPermissionProfile] = {
    kind: ProviderPermissionProfile(default_permission_mode=PermissionMode.EDIT)
    for kind in ProviderKind
}


@dataclass(slots=True)
class ProviderTier:
    """Provider/model pair configured at project or global level."""

    provider: ProviderKind | None = None
    model: str | None = None


@dataclass(slots=True)
class ResolvedProvider:
    provider: ProviderKind | None
    model: str | None


def resolve_provider(  # noqa: PLR0913
    *,
    cli_provider: ProviderKind | None,
    persona_entry: PersonaProviderEntry | None,
    movement: Movement | None,
    project: ProviderTier,
    global_: ProviderTier,
) -> ProviderKind | None:
    """First defined provider: CLI, persona entry, movement, project, global."""

    for candidate in (
        cli_provider,
        persona_entry.provider if persona_entry else None,
        movement.provider if movement else None,
        project.provider,
        global_.provider,
    ):
        if candidate is not None:
            return candidate
    return None


def resolve_model(  # noqa: PLR0913
    *,
    resolved_provider: ProviderKind | None,
    cli_model: str | None,
    persona_entry: PersonaProviderEntry | None,
    movement: Movement | None,
    project: ProviderTier,
    global_: ProviderTier,
) -> str | None:
    """First defined model across the same tiers as resolve_provider.

    A project or global model is skipped when that tier pins a provider other
    than the resolved one.
    """

    for candidate in (
        cli_model,
        persona_entry.model if persona_entry else None,
        movement.model if movement else None,
    ):
        if candidate:
            return candidate
    for tier in (project, global_):
        if not tier.model:
            continue
        if tier.provider is not None and tier.provider != resolved_provider:
            continue
        return tier.model
    return None


def resolve_movement_provider_model(
    *,
    movement: Movement,
    persona_providers: Mapping[str, PersonaProviderEntry],
    provider: ProviderKind | None,
    model: str | None,
) -> ResolvedProvider:
    """Movement-scoped pair: persona entry, movement, then the top-level value."""

    entry = persona_providers.get(movement.persona) if movement.persona else None
    resolved_provider = (
        (entry.provider if entry else None) or movement.provider or provider
    )
    resolved_model = (entry.model if entry else None) or movement.model or model
    return ResolvedProvider(provider=resolved_provider, model=resolved_model)


def resolve_permission_mode(
    *,
    movement: Movement,
    provider: ProviderKind | None,
    project_profiles: Mapping[ProviderKind, ProviderPermissionProfile],
    global_profiles: Mapping[ProviderKind, ProviderPermissionProfile],
) -> PermissionMode:
    """Resolve tool permission for a movement, never below its required mode.

    Profiles are consulted only when a provider is known. The movement's own
    ``permission_mode`` applies when no profile resolves.
    """

    required = movement.required_permission_mode
    if provider is not None:
        project = project_profiles.get(provider)
        global_ = global_profiles.get(provider)
        for candidate in (
            project.movement_permission_overrides.get(movement.name) if project else None,
            global_.movement_permission_overrides.get(movement.name) if global_ else None,
            project.default_permission_mode if project else None,
            global_.default_permission_mode if global_ else None,
        ):
            if candidate is not None:
                return _floor(candidate, required)
    if movement.permission_mode is not None:
        return _floor(movement.permission_mode, required)
    return required or PermissionMode.READONLY


def _floor(mode: PermissionMode, required: PermissionMode | None) -> PermissionMode:
    if required is not None and required.rank > mode.rank:
        return required
    return mode
