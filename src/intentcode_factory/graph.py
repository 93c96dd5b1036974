from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any, Iterator

from .canonical import structured_content_hash, text_hash
from .errors import GraphInvariantError, InvalidPathError
from .models import EdgeType, GraphEdge, GraphNode, NodeType
from .state_store import GraphStateStore

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class GraphStore:
    """Content-addressed project graph on top of :class:`GraphStateStore`.

    Nodes are addressed by ``(parent, instance, type, name)``; every
    ``get_or_create_*`` call is idempotent for the same key.
    """

    def __init__(self, state_store: GraphStateStore, *, instance_id: str) -> None:
        self.state_store = state_store
        self.instance_id = instance_id

    # ----- nodes -----

    def get_node(self, node_id: str) -> GraphNode | None:
        return self.state_store.get_node(node_id)

    def require_node(self, node_id: str) -> GraphNode:
        """Return a node that must exist.

        Raises:
            GraphInvariantError: If the node is missing.
        """
        node = self.state_store.get_node(node_id)
        if node is None:
            raise GraphInvariantError(f"Required node {node_id} is missing")
        return node

    def find_child(self, parent: GraphNode | None, node_type: NodeType, name: str) -> GraphNode | None:
        parent_id = parent.id if parent is not None else None
        return self.state_store.find_node(parent_id, self.instance_id, node_type, name)

    def children(self, parent: GraphNode, node_type: NodeType | None = None) -> list[GraphNode]:
        return self.state_store.list_nodes(parent_id=parent.id, node_type=node_type)

    def get_or_create_node(
        self,
        parent: GraphNode | None,
        node_type: NodeType,
        name: str,
        *,
        json_content: dict[str, Any] | None = None,
    ) -> GraphNode:
        """Resolve a node by key, creating it (with optional initial JSON content) if absent."""
        # Held across find and insert so concurrent units never race on the same key.
        with self.state_store.transaction():
            existing = self.find_child(parent, node_type, name)
            if existing is not None:
                return existing
            node = GraphNode(
                parent_id=parent.id if parent is not None else None,
                instance_id=self.instance_id,
                type=node_type,
                name=name,
                json_content=json_content,
                json_content_hash=structured_content_hash(json_content) if json_content is not None else None,
            )
            logger.debug("Creating %s node %r", node_type.value, name)
            return self.state_store.insert_node(node)

    def set_content(
        self,
        node: GraphNode,
        *,
        content: str | None = _UNSET,
        json_content: dict[str, Any] | None = _UNSET,
        content_updated: datetime | None = _UNSET,
    ) -> GraphNode:
        """Update a node in place, recomputing the hashes of whatever content changed."""
        updates: dict[str, Any] = {}
        if content is not _UNSET:
            updates["content"] = content
            updates["content_hash"] = text_hash(content) if content is not None else None
        if json_content is not _UNSET:
            updates["json_content"] = json_content
            updates["json_content_hash"] = (
                structured_content_hash(json_content) if json_content is not None else None
            )
        if content_updated is not _UNSET:
            updates["content_updated"] = content_updated
        current = self.require_node(node.id)
        return self.state_store.update_node(current.model_copy(update=updates))

    def upsert_derived_data(
        self,
        parent: GraphNode,
        node_type: NodeType,
        name: str,
        json_content: dict[str, Any] | None,
        *,
        content: str | None = _UNSET,
    ) -> GraphNode:
        """Store (or overwrite) the derived-data child of *parent* with the well-known *name*."""
        node = self.get_or_create_node(parent, node_type, name)
        return self.set_content(node, json_content=json_content, content=content)

    def get_or_create_path(
        self,
        root: GraphNode,
        full_path: str | Path,
        *,
        dir_type: NodeType,
        file_type: NodeType,
    ) -> GraphNode:
        """Map a filesystem path under *root* onto a chain of directory nodes ending in a file node.

        Args:
            root: A root node whose ``json_content["path"]`` holds the directory it mirrors.
            full_path: Absolute path of a file inside that directory.
            dir_type: Node type for intermediate directories.
            file_type: Node type for the final segment.

        Returns:
            The file node; the same node for repeated calls with the same path.

        Raises:
            InvalidPathError: If *full_path* is not inside the root's directory.
        """
        relative = self.relative_path(root, full_path)
        *directories, filename = relative.parts
        parent = root
        for directory in directories:
            parent = self.get_or_create_node(parent, dir_type, directory)
        return self.get_or_create_node(parent, file_type, filename)

    def find_path(self, root: GraphNode, full_path: str | Path, *, dir_type: NodeType, file_type: NodeType) -> GraphNode | None:
        """Resolve a path like :meth:`get_or_create_path` without creating anything."""
        relative = self.relative_path(root, full_path)
        *directories, filename = relative.parts
        parent: GraphNode | None = root
        for directory in directories:
            parent = self.find_child(parent, dir_type, directory)
            if parent is None:
                return None
        return self.find_child(parent, file_type, filename)

    def relative_path(self, root: GraphNode, full_path: str | Path) -> PurePosixPath:
        """Return *full_path* relative to the root node's directory.

        Raises:
            InvalidPathError: If the root has no path, or *full_path* lies outside it.
        """
        if root.path is None:
            raise InvalidPathError(f"Root node {root.name!r} has no path")
        root_text = str(root.path).rstrip("/")
        path_text = str(full_path)
        if not path_text.startswith(root_text + "/"):
            raise InvalidPathError(f"Invalid path: {path_text} is not under {root_text}")
        segments = path_text[len(root_text) + 1 :].split("/")
        if any(segment in ("", ".", "..") for segment in segments):
            raise InvalidPathError(f"Invalid path: {path_text}")
        return PurePosixPath(*segments)

    def walk(self, node: GraphNode) -> Iterator[GraphNode]:
        """Yield *node* and all of its descendants, pre-order."""
        yield node
        for child in self.children(node):
            yield from self.walk(child)

    def file_nodes(self, root: GraphNode, *, dir_type: NodeType, file_type: NodeType) -> list[tuple[Path, GraphNode]]:
        """Return ``(full path, node)`` for every file node below *root*, sorted by path."""
        if root.path is None:
            raise InvalidPathError(f"Root node {root.name!r} has no path")
        found: list[tuple[Path, GraphNode]] = []

        def _visit(parent: GraphNode, directory: Path) -> None:
            for child in self.children(parent):
                if child.type == dir_type:
                    _visit(child, directory / child.name)
                elif child.type == file_type:
                    found.append((directory / child.name, child))

        _visit(root, root.path)
        return sorted(found, key=lambda item: str(item[0]))

    # ----- edges -----

    def link(self, from_node: GraphNode, to_node: GraphNode, edge_type: EdgeType, name: str = "") -> GraphEdge:
        existing = self.state_store.find_edge(from_node.id, to_node.id, edge_type, name)
        if existing is not None:
            return existing
        return self.state_store.insert_edge(
            GraphEdge(from_id=from_node.id, to_id=to_node.id, type=edge_type, name=name)
        )

    def unlink(self, from_node: GraphNode, to_node: GraphNode, edge_type: EdgeType, name: str = "") -> bool:
        existing = self.state_store.find_edge(from_node.id, to_node.id, edge_type, name)
        if existing is None:
            return False
        self.state_store.delete_edge(existing.id)
        return True

    def edges_from(self, node: GraphNode, edge_type: EdgeType | None = None) -> list[GraphEdge]:
        return self.state_store.edges_from(node.id, edge_type)

    def edges_to(self, node: GraphNode, edge_type: EdgeType | None = None) -> list[GraphEdge]:
        return self.state_store.edges_to(node.id, edge_type)

    # ----- deletion -----

    def cascade_delete(self, node: GraphNode, *, including_self: bool = True) -> int:
        """Delete the subtree below *node*, and *node* itself when ``including_self``.

        For each node, out-edges go first, then in-edges, then generation
        records, then its children (recursively), and the node last, so the
        store never holds a reference to a deleted node.

        Returns:
            Number of nodes deleted.
        """
        with self.state_store.transaction():
            deleted = 0
            if including_self:
                for edge in self.state_store.edges_from(node.id):
                    self.state_store.delete_edge(edge.id)
                for edge in self.state_store.edges_to(node.id):
                    self.state_store.delete_edge(edge.id)
                for record in self.state_store.generations_for(node.id):
                    self.state_store.delete_generation(record.id)
            for child in self.children(node):
                deleted += self.cascade_delete(child, including_self=True)
            if including_self:
                self.state_store.delete_node(node.id)
                deleted += 1
        if including_self:
            logger.debug("Cascade-deleted %s node %r (%d nodes)", node.type.value, node.name, deleted)
        return deleted

    def find_orphans(self) -> tuple[list[GraphNode], list[GraphEdge]]:
        """Return nodes whose parent is missing and edges with a missing endpoint."""
        nodes = {node.id: node for node in self.state_store.all_nodes()}
        orphan_nodes = [node for node in nodes.values() if node.parent_id is not None and node.parent_id not in nodes]
        orphan_edges = [
            edge for edge in self.state_store.all_edges() if edge.from_id not in nodes or edge.to_id not in nodes
        ]
        return orphan_nodes, orphan_edges
