"""Line-prefixed console output for concurrently running tasks."""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass

COLORS = ("\x1b[36m", "\x1b[33m", "\x1b[35m", "\x1b[32m")
RESET = "\x1b[0m"
_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")


@dataclass(slots=True)
class MovementContext:
    """Movement position shown in the prefix."""

    movement: str
    iteration: int
    max_movements: int
    movement_iteration: int


class TaskPrefixWriter:
    """Prefix every complete output line with a colored task label.

    Chunks are buffered until a newline arrives so that lines from parallel
    tasks never interleave mid-line.
    """

    def __init__(self, task_name: str, color_index: int, write: Callable[[str], None]) -> None:
        self.task_name = task_name
        self.color = COLORS[color_index % len(COLORS)]
        self._write = write
        self._pending = ""
        self._movement: MovementContext | None = None

    def set_movement(self, context: MovementContext | None) -> None:
        self._movement = context

    @property
    def prefix(self) -> str:
        label = f"[{self.task_name[:4]}]"
        if self._movement is not None:
            ctx = self._movement
            label += (
                f"[{ctx.movement}]({ctx.iteration}/{ctx.max_movements})"
                f"({ctx.movement_iteration})"
            )
        return f"{self.color}{label}{RESET} "

    def write_line(self, text: str) -> None:
        for line in strip_ansi(text).split("\n"):
            self._emit(line)

    def write_chunk(self, text: str) -> None:
        data = self._pending + text
        *complete, self._pending = data.split("\n")
        for line in complete:
            self._emit(strip_ansi(line))

    def flush(self) -> None:
        if not self._pending:
            return
        line, self._pending = self._pending, ""
        self._emit(strip_ansi(line))

    def _emit(self, line: str) -> None:
        if not line:
            self._write("\n")
            return
        self._write(f"{self.prefix}{line}\n")


def strip_ansi(text: str) -> str:
    return _ANSI_ESCAPE.sub("", text)
