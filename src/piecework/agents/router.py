"""Dispatch agent calls to the provider variant chosen for a movement."""

from __future__ import annotations

from collections.abc import Mapping

from piecework.agents.base import AgentCaller, AgentRunError
from piecework.engine.models import AgentOptions, AgentResponse, ProviderKind


class ProviderRouter:
    """Route each call by ``options.movement_provider`` (falling back to ``provider``)."""

    def __init__(
        self,
        providers: Mapping[ProviderKind, AgentCaller],
        *,
        default: ProviderKind | None = None,
    ) -> None:
        self.providers = dict(providers)
        self.default = default

    async def call(self, persona: str, prompt: str, options: AgentOptions) -> AgentResponse:
        kind = options.movement_provider or options.provider or self.default
        if kind is None:
            raise AgentRunError(
                "No provider resolved. Set PIECEWORK_PROVIDER or configure one per movement.",
                transient=False,
            )
        provider = self.providers.get(kind)
        if provider is None:
            raise AgentRunError(f"Provider not configured: {kind.value}", transient=False)
        return await provider.call(persona, prompt, options)
