"""Agent collaborator contract."""

from __future__ import annotations

from typing import Protocol

from piecework.engine.models import AgentOptions, AgentResponse


class AgentRunError(RuntimeError):
    """Provider execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class AgentCaller(Protocol):
    """Protocol implemented by agent providers.

    One invocation per movement turn; callers never assume retry or idempotence.
    """

    async def call(self, persona: str, prompt: str, options: AgentOptions) -> AgentResponse:
        """Run the agent under ``persona`` and return its response."""
