"""Explicit execution context shared by engine and runner components."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TextIO

UserInputSource = Callable[[str, str], Awaitable[str | None]]


@dataclass(slots=True)
class ExecutionContext:
    """Run-scoped switches that used to live in process globals."""

    quiet: bool = False
    interactive: bool = False
    abort_event: asyncio.Event = field(default_factory=asyncio.Event)
    user_input: UserInputSource | None = None
    stream: TextIO = field(default_factory=lambda: sys.stdout)

    @property
    def aborted(self) -> bool:
        return self.abort_event.is_set()

    def request_abort(self) -> None:
        self.abort_event.set()

    def write(self, text: str) -> None:
        """Write console output unless running quietly."""

        if self.quiet:
            return
        self.stream.write(text)
        self.stream.flush()

    async def request_user_input(self, movement: str, prompt: str) -> str | None:
        """Ask the interactive source for input, None when unavailable."""

        if not self.interactive or self.user_input is None:
            return None
        return await self.user_input(movement, prompt)
