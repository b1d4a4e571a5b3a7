"""Error taxonomy and process exit codes."""

from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit codes reported to the invoking shell."""

    SUCCESS = 0
    GENERAL_ERROR = 1
    ISSUE_FETCH_FAILED = 2
    PIECE_FAILED = 3
    GIT_OPERATION_FAILED = 4
    PR_CREATION_FAILED = 5
    INTERRUPTED = 130


class PieceworkError(RuntimeError):
    """Base class for orchestration errors."""

    exit_code: ExitCode = ExitCode.GENERAL_ERROR


class UnknownMovement(PieceworkError):
    """A rule or start reference names a movement absent from the piece."""

    exit_code = ExitCode.PIECE_FAILED

    def __init__(self, movement: str, *, piece: str | None = None) -> None:
        where = f' in piece "{piece}"' if piece else ""
        super().__init__(f'Unknown movement "{movement}"{where}')
        self.movement = movement
        self.piece = piece


class LoopDetected(PieceworkError):
    """The same movement repeated without progress past the threshold."""

    exit_code = ExitCode.PIECE_FAILED

    def __init__(self, movement: str, count: int) -> None:
        super().__init__(
            f'Loop detected: movement "{movement}" repeated {count} times without progress',
        )
        self.movement = movement
        self.count = count


class MaxMovementsReached(PieceworkError):
    """Global movement iteration cap hit."""

    exit_code = ExitCode.PIECE_FAILED

    def __init__(self, limit: int) -> None:
        super().__init__(f"Max movements reached ({limit})")
        self.limit = limit


class MovementExecutionFailed(PieceworkError):
    """Agent/provider failure or an unmatched rule set."""

    exit_code = ExitCode.PIECE_FAILED


class PieceRunFailed(PieceworkError):
    """A piece run finished without success."""

    exit_code = ExitCode.PIECE_FAILED


class PieceNotFound(PieceworkError):
    """Piece name cannot be resolved to a definition."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Piece not found: {name}")
        self.name = name


class TaskStoreWriteFailed(PieceworkError):
    """The task store could not persist a state change."""


class TaskNotFound(PieceworkError):
    """A lifecycle operation targets a missing record."""


class StaleRunningTask(PieceworkError):
    """A running record whose owner process is gone.

    Recovery logs this condition and requeues the record; it never reaches callers.
    """

    def __init__(self, name: str, owner_pid: int | None) -> None:
        super().__init__(f"Stale running task {name} (owner_pid={owner_pid})")
        self.name = name
        self.owner_pid = owner_pid


class GitOperationFailed(PieceworkError):
    """A git subprocess exited with an error."""

    exit_code = ExitCode.GIT_OPERATION_FAILED


class Interrupted(PieceworkError):
    """Execution stopped by SIGINT/SIGTERM."""

    exit_code = ExitCode.INTERRUPTED
