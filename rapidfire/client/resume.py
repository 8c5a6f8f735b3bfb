from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from rapidfire.client.gateway import MatchmakingGateway
from rapidfire.errors import NotInSession, SessionNotFound
from rapidfire.schemas import GameSession

logger = logging.getLogger(__name__)


class ResumeStore:
    """One JSON file holding the id of the active session."""

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> str | None:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Discarding unreadable resume file %s: %s", self.path, exc)
            self.clear()
            return None
        session_id = data.get("session_id") if isinstance(data, dict) else None
        return session_id if isinstance(session_id, str) and session_id else None

    def save(self, session_id: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".resume-")
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump({"session_id": session_id}, fh)
        os.replace(tmp_name, self.path)

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


class ResumeManager:
    """
    Keeps the active session id outside the session's own memory.

    The id is written when a session is acquired and removed as soon as the
    session is terminal or the user leaves.
    """

    def __init__(self, store: ResumeStore) -> None:
        self.store = store

    def remember(self, session_id: str) -> None:
        self.store.save(session_id)
        logger.debug("Remembered session %s", session_id)

    def forget(self) -> None:
        self.store.clear()

    def pending_session_id(self) -> str | None:
        return self.store.load()

    async def restore(self, gateway: MatchmakingGateway) -> GameSession | None:
        """
        Fetches the persisted session by plain request.

        Returns the snapshot to reattach to, or ``None`` after discarding an
        id whose session is gone or already over.
        """
        session_id = self.store.load()
        if session_id is None:
            return None
        try:
            snapshot = await gateway.get_session(session_id)
        except (SessionNotFound, NotInSession):
            logger.info("Persisted session %s no longer exists", session_id)
            self.forget()
            return None
        if snapshot.status.is_terminal:
            logger.info("Persisted session %s is already %s", session_id, snapshot.status.value)
            self.forget()
            return None
        return snapshot
