"""
SessionManager - directory of JSON Lines session files.

One file per session, named <session_id>.jsonl. Session ids are restricted
to [A-Za-z0-9_-] so an id can never escape the sessions directory.
"""

from __future__ import annotations

import asyncio
import re
import weakref
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from pydantic import BaseModel

from skein.errors import InvalidSessionIdError, SessionNotFoundError
from skein.session.session import Session
from skein.session.store import JsonlSessionStore, SessionHeader
from skein.utils.logging import get_logger

logger = get_logger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class SessionInfo(BaseModel):
    """Summary of a session file for listings."""

    id: str
    path: Path
    created_at: datetime
    updated_at: datetime
    cwd: str = ""
    title: str | None = None
    parent_session: str | None = None


def validate_session_id(session_id: str) -> None:
    """
    Raises:
        InvalidSessionIdError: If the id is empty or has characters outside [A-Za-z0-9_-]
    """
    if not session_id or not _SESSION_ID_RE.match(session_id):
        raise InvalidSessionIdError(
            f"Invalid session ID: {session_id!r} (only [A-Za-z0-9_-] allowed)"
        )


class SessionManager:
    """
    Creates, opens, lists, forks and deletes sessions in a directory.

    Examples:
        manager = SessionManager(settings.sessions_dir)
        session = await manager.create(title="refactor utils")
        ...
        session = await manager.open(session.id)
    """

    def __init__(self, sessions_dir: str | Path):
        self.sessions_dir = Path(sessions_dir).expanduser()
        # One live Session per id, so every caller shares its writer lease
        self._sessions: weakref.WeakValueDictionary[str, Session] = weakref.WeakValueDictionary()
        self._open_lock = asyncio.Lock()

    def session_path(self, session_id: str) -> Path:
        validate_session_id(session_id)
        return self.sessions_dir / f"{session_id}.jsonl"

    def exists(self, session_id: str) -> bool:
        try:
            return self.session_path(session_id).exists()
        except InvalidSessionIdError:
            return False

    async def create(
        self,
        session_id: str | None = None,
        title: str | None = None,
        cwd: str = "",
        parent_session: str | None = None,
    ) -> Session:
        """
        Create a new session file (mode 0600) with its header.

        Raises:
            InvalidSessionIdError: If session_id is not a valid id
            SessionExistsError: If the session already exists
        """
        if session_id is None:
            session_id = uuid4().hex
        path = self.session_path(session_id)
        header = SessionHeader(id=session_id, cwd=cwd, title=title, parent_session=parent_session)
        session = await Session.create(JsonlSessionStore(path), header)
        self._sessions[session_id] = session
        return session

    async def open(self, session_id: str) -> Session:
        """
        Open and replay an existing session.

        While a Session for this id is still referenced, the same object is
        returned, so two callers can never hold separate writer leases on
        one file.

        Raises:
            SessionNotFoundError: If no such session exists
            CorruptLogError: If the log cannot be replayed
        """
        path = self.session_path(session_id)
        async with self._open_lock:
            session = self._sessions.get(session_id)
            if session is not None:
                return session
            if not path.exists():
                raise SessionNotFoundError(f"Session not found: {session_id}")
            session = await Session.reload(JsonlSessionStore(path))
            self._sessions[session_id] = session
            return session

    async def list(self) -> list[SessionInfo]:
        """Sessions in the directory, most recently modified first."""
        return await asyncio.to_thread(self._list_sync)

    def _list_sync(self) -> list[SessionInfo]:
        if not self.sessions_dir.exists():
            return []
        sessions = []
        for path in self.sessions_dir.glob("*.jsonl"):
            if not _SESSION_ID_RE.match(path.stem):
                continue
            header = JsonlSessionStore(path).read_header_sync()
            stat = path.stat()
            updated_at = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
            if header is None:
                logger.warning("session_header_missing", path=str(path))
                sessions.append(
                    SessionInfo(id=path.stem, path=path, created_at=updated_at, updated_at=updated_at)
                )
                continue
            sessions.append(
                SessionInfo(
                    id=header.id,
                    path=path,
                    created_at=header.timestamp,
                    updated_at=updated_at,
                    cwd=header.cwd,
                    title=header.title,
                    parent_session=header.parent_session,
                )
            )
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return sessions

    async def most_recent(self) -> Session | None:
        """Open the most recently modified session, if any."""
        sessions = await self.list()
        if not sessions:
            return None
        return await self.open(sessions[0].id)

    async def delete(self, session_id: str) -> None:
        """
        Raises:
            SessionNotFoundError: If no such session exists
        """
        path = self.session_path(session_id)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            raise SessionNotFoundError(f"Session not found: {session_id}") from None
        self._sessions.pop(session_id, None)
        logger.info("session_deleted", session_id=session_id)

    async def fork(
        self,
        session_id: str,
        node_id: str,
        title: str | None = None,
        new_session_id: str | None = None,
    ) -> Session:
        """
        Create a new session holding the root-to-node path of another one.

        Node ids, parents and timestamps are kept; sequence numbers restart.
        The new header records the source session as its parent.

        Raises:
            SessionNotFoundError: If the source session does not exist
            UnknownNodeError: If node_id is not in the source session
        """
        source = await self.open(session_id)
        path = source.tree.path_to(node_id)

        header = source.header
        forked = await self.create(
            session_id=new_session_id,
            title=title if title is not None else (header.title if header else None),
            cwd=header.cwd if header else "",
            parent_session=source.id,
        )
        await forked.import_path(path)
        logger.info(
            "session_forked",
            source_session_id=session_id,
            session_id=forked.id,
            node_id=node_id,
            nodes=len(path),
        )
        return forked


__all__ = ["SessionManager", "SessionInfo", "validate_session_id"]
