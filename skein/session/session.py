"""
Session - persisted, append-only conversation tree with an active leaf.

Responsibilities:
- Durable append of message nodes (on stable storage before visible)
- Active path selection and branch switching
- Rebuilding the tree from a store's log
- Admitting one writer run at a time

Does NOT handle:
- File locations (SessionManager)
- Context compaction (the agent loop compacts what it sends, never the tree)
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, TypeVar
from uuid import uuid4

from skein.domain import Message
from skein.errors import (
    CorruptLogError,
    SessionBusyError,
    SessionError,
    UnknownNodeError,
    UnknownParentError,
)
from skein.session.store import (
    ActiveLeafRecord,
    NodeRecord,
    SessionHeader,
    SessionLog,
    SessionStore,
)
from skein.session.tree import SessionNode, SessionTree
from skein.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def _new_node_id() -> str:
    return uuid4().hex[:12]


async def _run_to_completion(coro: Awaitable[T]) -> T:
    """
    Await coro even if the caller is cancelled meanwhile.

    A record that reached the store must also reach the in-memory tree, so
    the cancellation is re-raised only after coro has finished.
    """
    task = asyncio.ensure_future(coro)
    interrupted = False
    while True:
        try:
            result = await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.done():
                raise
            interrupted = True
            continue
        break
    if interrupted:
        raise asyncio.CancelledError()
    return result


class Session:
    """
    A conversation tree plus the id of its active leaf.

    append() is the only way nodes enter the tree. Appends are serialized by
    an asyncio.Lock; reads (active_path, tree navigation) take no lock.

    Examples:
        session = await Session.create(InMemorySessionStore(), SessionHeader(id="s1"))
        root = await session.append(None, Message.system("You are helpful."))
        await session.append(root, Message.user("hi"))
    """

    def __init__(self, store: SessionStore, header: SessionHeader | None = None):
        self.store = store
        self.header = header
        self.tree = SessionTree()
        self._active_leaf_id: str | None = None
        self._next_sequence = 1
        self._append_lock = asyncio.Lock()
        self._writer_held = False

    # --- Construction ---

    @classmethod
    async def create(cls, store: SessionStore, header: SessionHeader | None = None) -> "Session":
        """Create a new, empty session in the store."""
        header = header or SessionHeader(id=_new_node_id())
        await store.create(header)
        logger.info("session_created", session_id=header.id)
        return cls(store, header)

    @classmethod
    async def reload(cls, store: SessionStore) -> "Session":
        """
        Rebuild a session from its persisted log.

        Records are replayed in sequence order. The active leaf is the most
        recently appended node unless a later active_leaf record moved it.

        Raises:
            CorruptLogError: If a record references a missing node
        """
        log = await store.load()
        session = cls(store, log.header)
        session._replay(log)
        logger.info(
            "session_reloaded",
            session_id=session.id,
            nodes=len(session.tree),
            active_leaf=session.active_leaf_id,
            skipped_tail=log.skipped_tail,
        )
        return session

    def _replay(self, log: SessionLog) -> None:
        max_sequence = 0
        for record in log.records:
            max_sequence = max(max_sequence, record.sequence)
            if isinstance(record, NodeRecord):
                try:
                    self.tree.add(record.to_node())
                except SessionError as e:
                    raise CorruptLogError(
                        f"Record {record.sequence} ({record.node_id}) cannot be replayed: {e}"
                    ) from e
                self._active_leaf_id = record.node_id
            else:
                if record.node_id not in self.tree:
                    raise CorruptLogError(
                        f"Active leaf record {record.sequence} points at unknown node {record.node_id}"
                    )
                self._active_leaf_id = record.node_id
        self._next_sequence = max_sequence + 1

    # --- Properties ---

    @property
    def id(self) -> str | None:
        return self.header.id if self.header else None

    @property
    def active_leaf_id(self) -> str | None:
        return self._active_leaf_id

    @property
    def active_leaf(self) -> SessionNode | None:
        return self.tree.get(self._active_leaf_id) if self._active_leaf_id else None

    def is_empty(self) -> bool:
        return len(self.tree) == 0

    def __len__(self) -> int:
        return len(self.tree)

    # --- Reads ---

    def active_nodes(self) -> list[SessionNode]:
        """Nodes root to active leaf."""
        if self._active_leaf_id is None:
            return []
        return self.tree.path_to(self._active_leaf_id)

    def active_path(self) -> list[Message]:
        """Messages root to active leaf, in creation order."""
        return [node.message for node in self.active_nodes()]

    # --- Mutations ---

    async def append(self, parent_id: str | None, message: Message) -> str:
        """
        Append a message under parent_id and make it the active leaf.

        The record is on stable storage before the node becomes visible.
        Appending under a node that already has children creates a branch.

        Args:
            parent_id: Parent node id; None only for the root of an empty tree
            message: Message payload

        Returns:
            str: New node id

        Raises:
            UnknownParentError: If parent_id is not in the tree
        """
        async with self._append_lock:
            if parent_id is None:
                if len(self.tree) > 0:
                    raise UnknownParentError(None)
            elif parent_id not in self.tree:
                raise UnknownParentError(parent_id)

            node_id = _new_node_id()
            while node_id in self.tree:
                node_id = _new_node_id()

            node = SessionNode(
                id=node_id,
                parent_id=parent_id,
                timestamp=datetime.now(timezone.utc),
                sequence=self._next_sequence,
                message=message,
            )
            await _run_to_completion(self._commit(NodeRecord.from_node(node), node))

        logger.debug(
            "node_appended",
            session_id=self.id,
            node_id=node_id,
            parent_id=parent_id,
            role=message.role.value,
            sequence=node.sequence,
        )
        return node_id

    async def append_to_leaf(self, message: Message) -> str:
        """Append under the current active leaf (or as root when empty)."""
        return await self.append(self._active_leaf_id, message)

    async def import_path(self, nodes: list[SessionNode]) -> None:
        """
        Append existing nodes (a root-to-node path from another session)
        keeping their ids, parents and timestamps. Sequences are renumbered.
        """
        async with self._append_lock:
            for source in nodes:
                if source.parent_id is None:
                    if len(self.tree) > 0:
                        raise UnknownParentError(None)
                elif source.parent_id not in self.tree:
                    raise UnknownParentError(source.parent_id)
                node = source.model_copy(update={"sequence": self._next_sequence})
                await _run_to_completion(self._commit(NodeRecord.from_node(node), node))

    async def set_active_leaf(self, node_id: str) -> None:
        """
        Switch the active leaf to another node and persist the pointer.

        Raises:
            UnknownNodeError: If node_id is not in the tree
        """
        async with self._append_lock:
            if node_id not in self.tree:
                raise UnknownNodeError(node_id)
            record = ActiveLeafRecord(sequence=self._next_sequence, node_id=node_id)
            await _run_to_completion(self._commit(record))
        logger.debug("active_leaf_changed", session_id=self.id, node_id=node_id)

    async def _commit(
        self, record: NodeRecord | ActiveLeafRecord, node: SessionNode | None = None
    ) -> None:
        """Persist one record, then apply it. Called with the append lock held."""
        await self.store.append(record)
        self._next_sequence += 1
        if node is not None:
            self.tree.add(node)
        self._active_leaf_id = record.node_id

    # --- Writer lease ---

    @asynccontextmanager
    async def writer(self) -> AsyncIterator["Session"]:
        """
        Hold write access for the duration of a run.

        Raises:
            SessionBusyError: If another run already holds it
        """
        if self._writer_held:
            raise SessionBusyError(f"Session {self.id} is already being written by another run")
        self._writer_held = True
        try:
            yield self
        finally:
            self._writer_held = False

    @property
    def is_busy(self) -> bool:
        return self._writer_held

    def __repr__(self) -> str:
        return f"Session(id={self.id!r}, nodes={len(self.tree)}, active_leaf={self._active_leaf_id!r})"


__all__ = ["Session"]
