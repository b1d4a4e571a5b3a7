"""Scripted in-process agent for tests and dry runs."""

from __future__ import annotations

import re
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from piecework.engine.models import AgentOptions, AgentResponse, AgentStatus

_STATUS_TAG = re.compile(r"\[[A-Za-z0-9_.-]+:1\]")

ScriptedReply = AgentResponse | Callable[[str, str, AgentOptions], AgentResponse]


@dataclass(slots=True)
class MockCall:
    """One recorded call."""

    persona: str
    prompt: str
    options: AgentOptions


class MockAgentProvider:
    """Return scripted responses in order.

    Without a script left, reply ``done`` echoing the last ``[X:1]`` status tag
    found in the prompt so that a piece advances along its first rules.
    """

    def __init__(self, replies: Iterable[ScriptedReply] = ()) -> None:
        self._replies: deque[ScriptedReply] = deque(replies)
        self.calls: list[MockCall] = []

    def queue(self, *replies: ScriptedReply) -> None:
        self._replies.extend(replies)

    async def call(self, persona: str, prompt: str, options: AgentOptions) -> AgentResponse:
        self.calls.append(MockCall(persona=persona, prompt=prompt, options=options))
        if self._replies:
            reply = self._replies.popleft()
            response = reply(persona, prompt, options) if callable(reply) else reply
        else:
            tags = _STATUS_TAG.findall(prompt)
            response = AgentResponse(
                persona=persona,
                status=AgentStatus.DONE,
                content=f"Mock response. {tags[-1] if tags else ''}".strip(),
                session_id=f"mock-{persona}",
            )
        if options.on_stream is not None and response.content:
            options.on_stream(response.content + "\n")
        return response
