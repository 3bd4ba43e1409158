"""
Session layer - persisted branching conversation tree.

- tree: SessionNode and the in-memory SessionTree arena
- store: SessionStore interface, JSON Lines and in-memory stores
- session: Session (append, active path, reload, writer lease)
- manager: SessionManager for a directory of session files
"""

from skein.session.manager import SessionInfo, SessionManager, validate_session_id
from skein.session.session import Session
from skein.session.store import (
    CURRENT_SESSION_VERSION,
    ActiveLeafRecord,
    InMemorySessionStore,
    JsonlSessionStore,
    NodeRecord,
    SessionHeader,
    SessionLog,
    SessionStore,
)
from skein.session.tree import SessionNode, SessionTree

__all__ = [
    "CURRENT_SESSION_VERSION",
    "Session",
    "SessionNode",
    "SessionTree",
    "SessionHeader",
    "SessionLog",
    "NodeRecord",
    "ActiveLeafRecord",
    "SessionStore",
    "InMemorySessionStore",
    "JsonlSessionStore",
    "SessionManager",
    "SessionInfo",
    "validate_session_id",
]
