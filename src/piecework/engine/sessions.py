"""Session keys and per-key session persistence."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from urllib.parse import quote

from piecework.engine.models import Movement, ProviderKind
from piecework.storage.common import utc_now

logger = logging.getLogger(__name__)


def build_session_key(persona: str, provider: ProviderKind | str | None = None) -> str:
    """Key under which a conversation's session id is stored.

    ``persona`` alone, or ``persona:provider`` when a provider is pinned, so the
    same persona under different providers never shares a session.
    """

    if provider is None:
        return persona
    value = provider.value if isinstance(provider, ProviderKind) else provider
    return f"{persona}:{value}"


def movement_session_key(movement: Movement) -> str:
    return build_session_key(movement.persona or movement.name, movement.provider)


class SessionStore:
    """One JSON file per session key under a sessions directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def path_for(self, key: str) -> Path:
        return self.root / f"{quote(key, safe='')}.json"

    def load(self, key: str) -> str | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            logger.warning("Ignoring unreadable session file %s: %s", path, error)
            return None
        if not isinstance(payload, dict) or payload.get("key") != key:
            logger.warning("Ignoring session file %s stored for another key", path)
            return None
        session_id = payload.get("session_id")
        return session_id if isinstance(session_id, str) and session_id else None

    def load_all(self, keys: list[str]) -> dict[str, str]:
        sessions: dict[str, str] = {}
        for key in keys:
            session_id = self.load(key)
            if session_id is not None:
                sessions[key] = session_id
        return sessions

    def save(self, key: str, session_id: str) -> None:
        """Atomically write the session id for key."""

        self.root.mkdir(parents=True, exist_ok=True)
        payload = {"key": key, "session_id": session_id, "updated_at": utc_now().isoformat()}
        descriptor, tmp_name = tempfile.mkstemp(prefix=".session-", dir=self.root)
        try:
            with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, ensure_ascii=False, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path_for(key))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
