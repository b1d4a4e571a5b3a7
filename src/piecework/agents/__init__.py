"""Agent provider implementations."""

from piecework.agents.base import AgentCaller, AgentRunError
from piecework.agents.cli_agent import CliAgentProvider
from piecework.agents.mock_agent import MockAgentProvider
from piecework.agents.router import ProviderRouter

__all__ = [
    "AgentCaller",
    "AgentRunError",
    "CliAgentProvider",
    "MockAgentProvider",
    "ProviderRouter",
]
