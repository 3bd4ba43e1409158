"""
In-memory session tree.

Nodes live in an arena keyed by id; parent links are ids, never object
references. The tree only grows: there is no removal and no re-parenting.
"""

from datetime import datetime
from typing import Iterator

from pydantic import BaseModel, ConfigDict

from skein.domain import Message
from skein.errors import SessionError, UnknownNodeError, UnknownParentError


class SessionNode(BaseModel):
    """A message plus its position in the session tree."""

    model_config = ConfigDict(frozen=True)

    id: str
    parent_id: str | None = None
    timestamp: datetime
    sequence: int
    message: Message

    @property
    def is_root(self) -> bool:
        return self.parent_id is None


class SessionTree:
    """
    Arena of SessionNodes.

    Supports:
    - Adding a node under an existing parent (or as the root of an empty tree)
    - Navigation: children, path_to, leaves, branch points
    """

    def __init__(self) -> None:
        self._nodes: dict[str, SessionNode] = {}
        self._children: dict[str, list[str]] = {}
        self._root_id: str | None = None

    def add(self, node: SessionNode) -> None:
        """
        Add a node.

        Raises:
            UnknownParentError: If the parent is not in the tree, or a second
                root is added to a non-empty tree
            SessionError: If the node id is already used
        """
        if node.id in self._nodes:
            raise SessionError(f"Duplicate node id: {node.id}")
        if node.parent_id is None:
            if self._root_id is not None:
                raise UnknownParentError(None)
            self._root_id = node.id
        elif node.parent_id not in self._nodes:
            raise UnknownParentError(node.parent_id)
        else:
            self._children[node.parent_id].append(node.id)

        self._nodes[node.id] = node
        self._children[node.id] = []

    # --- Lookup ---

    def get(self, node_id: str) -> SessionNode:
        """
        Raises:
            UnknownNodeError: If the node is not in the tree
        """
        try:
            return self._nodes[node_id]
        except KeyError:
            raise UnknownNodeError(node_id) from None

    def find(self, node_id: str) -> SessionNode | None:
        return self._nodes.get(node_id)

    @property
    def root(self) -> SessionNode | None:
        return self._nodes[self._root_id] if self._root_id is not None else None

    @property
    def last_node(self) -> SessionNode | None:
        """Most recently added node (highest sequence)."""
        if not self._nodes:
            return None
        return max(self._nodes.values(), key=lambda n: n.sequence)

    # --- Navigation ---

    def children(self, node_id: str) -> list[SessionNode]:
        """Children of a node, oldest first."""
        if node_id not in self._nodes:
            raise UnknownNodeError(node_id)
        return [self._nodes[c] for c in self._children[node_id]]

    def path_to(self, node_id: str) -> list[SessionNode]:
        """Nodes from the root down to node_id, inclusive."""
        path = []
        current: str | None = node_id
        while current is not None:
            node = self.get(current)
            path.append(node)
            current = node.parent_id
        path.reverse()
        return path

    def leaves(self) -> list[SessionNode]:
        """Nodes without children, in creation order."""
        return sorted(
            (n for n in self._nodes.values() if not self._children[n.id]),
            key=lambda n: n.sequence,
        )

    def branch_points(self) -> list[SessionNode]:
        """Nodes with more than one child, in creation order."""
        return sorted(
            (n for n in self._nodes.values() if len(self._children[n.id]) > 1),
            key=lambda n: n.sequence,
        )

    def has_branches(self) -> bool:
        return any(len(c) > 1 for c in self._children.values())

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __iter__(self) -> Iterator[SessionNode]:
        """Nodes in creation order."""
        return iter(sorted(self._nodes.values(), key=lambda n: n.sequence))


__all__ = ["SessionNode", "SessionTree"]
