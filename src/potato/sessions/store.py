import logging
import re
from pathlib import Path

from common.jsonio import load_model, save_model
from potato.sessions.schema import ChatMessage, ChatSession

logger = logging.getLogger(__name__)

UNTITLED = "Untitled chat"

# Ids become file names; anything else could address files outside the store.
_SESSION_ID = re.compile(r"^[A-Za-z0-9_-]+$")


def derive_title(messages: list[ChatMessage], max_chars: int = 50) -> str:
    for message in messages:
        if message.role == "user" and message.content:
            return message.content[:max_chars]
    return UNTITLED


def is_valid_session_id(session_id: str) -> bool:
    return bool(_SESSION_ID.match(session_id))


class HistoryStore:
    """Chat transcripts stored as one JSON file per session."""

    def __init__(self, sessions_dir: str | Path):
        self.sessions_dir = Path(sessions_dir)

    def _path(self, session_id: str) -> Path | None:
        if not is_valid_session_id(session_id):
            logger.warning("Rejecting invalid session id %r", session_id)
            return None
        return self.sessions_dir / f"{session_id}.json"

    def save(self, session: ChatSession) -> Path:
        path = self._path(session.id)
        if path is None:
            raise ValueError(f"Invalid session id: {session.id!r}")
        save_model(path, session)
        logger.debug("Saved session %s (%d messages)", session.id, len(session.messages))
        return path

    def load(self, session_id: str) -> ChatSession | None:
        path = self._path(session_id)
        if path is None:
            return None
        return load_model(path, ChatSession)

    def list(self) -> list[ChatSession]:
        if not self.sessions_dir.exists():
            return []
        sessions = [load_model(path, ChatSession) for path in self.sessions_dir.glob("*.json")]
        return sorted(
            (s for s in sessions if s is not None), key=lambda s: s.created_at, reverse=True
        )

    def delete(self, session_id: str) -> bool:
        path = self._path(session_id)
        if path is None or not path.exists():
            return False
        path.unlink()
        return True
