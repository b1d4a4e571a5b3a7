"""Owner-process liveness probe used by crash recovery."""

from __future__ import annotations

import os


def is_process_alive(pid: int | None) -> bool:
    """Return whether a process with the given id exists.

    A process we may not signal still exists, so permission errors count as
    alive. Unexpected OS errors propagate.
    """

    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
