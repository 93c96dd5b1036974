from __future__ import annotations

import fcntl
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from .errors import GraphInvariantError
from .models import EdgeType, GenerationRecord, GraphEdge, GraphNode, GraphSnapshot, NodeType

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``fcntl`` lock on a ``.lock`` sidecar of *path*.

    The sidecar keeps the lock handle stable while the data file itself is
    swapped out with ``os.replace``.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write to a temp file beside *path*, fsync, then rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, label: str) -> str:
    """Read a JSON document, raising a clear error if missing or unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


# ---------------------------------------------------------------------------
# GraphStateStore
# ---------------------------------------------------------------------------

class GraphStateStore:
    """Persistence for graph nodes, edges and generation records.

    The whole graph lives in one JSON document (``graph.json``) under *root*.
    Every mutation rewrites it atomically under an ``fcntl`` lock; wrap bulk
    mutations in :meth:`transaction` to write once at the end. Reads return
    copies, so callers must hand changes back through ``update_node``.

    Referential rules mirror a relational store with foreign keys: a node
    needs an existing parent, an edge needs both endpoints, a generation record
    needs its node, and a node cannot be deleted while children, edges or
    generation records still reference it.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.graph_path = root / "graph.json"
        self._lock = threading.RLock()
        self._depth = 0
        self._dirty = False
        self._nodes: dict[str, GraphNode] = {}
        self._node_keys: dict[tuple[str | None, str, str, str], str] = {}
        self._edges: dict[str, GraphEdge] = {}
        self._edge_keys: dict[tuple[str, str, str, str], str] = {}
        self._generations: dict[str, GenerationRecord] = {}
        self._generation_keys: dict[tuple[str, str, str], str] = {}
        self.root.mkdir(parents=True, exist_ok=True)
        self._load()

    # ----- persistence -----

    def _load(self) -> None:
        if not self.graph_path.is_file():
            return
        with _locked_file(self.graph_path):
            text = _safe_read_json(self.graph_path, "Graph snapshot")
        try:
            snapshot = GraphSnapshot.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"Graph snapshot at {self.graph_path} is invalid: {exc}") from exc
        for node in snapshot.nodes:
            self._nodes[node.id] = node
            self._node_keys[node.unique_key] = node.id
        for edge in snapshot.edges:
            self._edges[edge.id] = edge
            self._edge_keys[edge.unique_key] = edge.id
        for record in snapshot.generations:
            self._generations[record.id] = record
            self._generation_keys[record.unique_key] = record.id
        logger.debug(
            "Loaded graph: %d nodes, %d edges, %d generations",
            len(self._nodes),
            len(self._edges),
            len(self._generations),
        )

    def _persist(self) -> None:
        snapshot = GraphSnapshot(
            nodes=list(self._nodes.values()),
            edges=list(self._edges.values()),
            generations=list(self._generations.values()),
        )
        with _locked_file(self.graph_path):
            _atomic_write_text(self.graph_path, snapshot.model_dump_json(indent=2) + "\n")
        self._dirty = False

    def _changed(self) -> None:
        self._dirty = True
        if self._depth == 0:
            self._persist()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Defer the document write until the outermost block exits."""
        with self._lock:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
                if self._depth == 0 and self._dirty:
                    self._persist()

    # ----- nodes -----

    def get_node(self, node_id: str) -> GraphNode | None:
        with self._lock:
            node = self._nodes.get(node_id)
            return node.model_copy(deep=True) if node is not None else None

    def find_node(
        self,
        parent_id: str | None,
        instance_id: str,
        node_type: NodeType,
        name: str,
    ) -> GraphNode | None:
        """Look a node up by its unique key ``(parent, instance, type, name)``."""
        with self._lock:
            node_id = self._node_keys.get((parent_id, instance_id, node_type.value, name))
            return self.get_node(node_id) if node_id is not None else None

    def list_nodes(
        self,
        *,
        parent_id: str | None = None,
        node_type: NodeType | None = None,
        instance_id: str | None = None,
    ) -> list[GraphNode]:
        """Return nodes filtered by parent, type and instance, in insertion order.

        ``parent_id=None`` matches root nodes only.
        """
        with self._lock:
            return [
                node.model_copy(deep=True)
                for node in self._nodes.values()
                if node.parent_id == parent_id
                and (node_type is None or node.type == node_type)
                and (instance_id is None or node.instance_id == instance_id)
            ]

    def all_nodes(self) -> list[GraphNode]:
        with self._lock:
            return [node.model_copy(deep=True) for node in self._nodes.values()]

    def insert_node(self, node: GraphNode) -> GraphNode:
        """Insert a new node.

        Raises:
            GraphInvariantError: If the unique key is taken or the parent does not exist.
        """
        with self._lock:
            if node.id in self._nodes:
                raise GraphInvariantError(f"Node id already exists: {node.id}")
            if node.unique_key in self._node_keys:
                raise GraphInvariantError(f"Duplicate node key: {node.unique_key}")
            if node.parent_id is not None and node.parent_id not in self._nodes:
                raise GraphInvariantError(f"Parent node {node.parent_id} of {node.name!r} does not exist")
            stored = node.model_copy(deep=True)
            self._nodes[stored.id] = stored
            self._node_keys[stored.unique_key] = stored.id
            self._changed()
            return stored.model_copy(deep=True)

    def update_node(self, node: GraphNode) -> GraphNode:
        """Replace a stored node in place, refreshing its ``updated`` timestamp.

        Raises:
            GraphInvariantError: If the node is unknown or its new key collides with a sibling.
        """
        with self._lock:
            existing = self._nodes.get(node.id)
            if existing is None:
                raise GraphInvariantError(f"Cannot update missing node {node.id}")
            if node.unique_key != existing.unique_key:
                owner = self._node_keys.get(node.unique_key)
                if owner is not None and owner != node.id:
                    raise GraphInvariantError(f"Duplicate node key: {node.unique_key}")
                del self._node_keys[existing.unique_key]
                self._node_keys[node.unique_key] = node.id
            stored = node.model_copy(deep=True, update={"updated": datetime.now(UTC)})
            self._nodes[node.id] = stored
            self._changed()
            return stored.model_copy(deep=True)

    def delete_node(self, node_id: str) -> None:
        """Delete a node that nothing references any more.

        Raises:
            GraphInvariantError: If the node has children, edges or generation records.
        """
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                return
            if any(child.parent_id == node_id for child in self._nodes.values()):
                raise GraphInvariantError(f"Node {node.name!r} ({node_id}) still has children")
            if any(edge.from_id == node_id or edge.to_id == node_id for edge in self._edges.values()):
                raise GraphInvariantError(f"Node {node.name!r} ({node_id}) still has edges")
            if any(record.node_id == node_id for record in self._generations.values()):
                raise GraphInvariantError(f"Node {node.name!r} ({node_id}) still has generation records")
            del self._node_keys[node.unique_key]
            del self._nodes[node_id]
            self._changed()

    # ----- edges -----

    def find_edge(self, from_id: str, to_id: str, edge_type: EdgeType, name: str = "") -> GraphEdge | None:
        with self._lock:
            edge_id = self._edge_keys.get((from_id, to_id, edge_type.value, name))
            return self._edges[edge_id].model_copy() if edge_id is not None else None

    def insert_edge(self, edge: GraphEdge) -> GraphEdge:
        """Insert a new edge.

        Raises:
            GraphInvariantError: If an endpoint is missing or the edge key already exists.
        """
        with self._lock:
            if edge.from_id not in self._nodes or edge.to_id not in self._nodes:
                raise GraphInvariantError(f"Edge {edge.unique_key} references a missing node")
            if edge.unique_key in self._edge_keys:
                raise GraphInvariantError(f"Duplicate edge key: {edge.unique_key}")
            self._edges[edge.id] = edge.model_copy()
            self._edge_keys[edge.unique_key] = edge.id
            self._changed()
            return edge.model_copy()

    def delete_edge(self, edge_id: str) -> None:
        with self._lock:
            edge = self._edges.pop(edge_id, None)
            if edge is None:
                return
            del self._edge_keys[edge.unique_key]
            self._changed()

    def edges_from(self, node_id: str, edge_type: EdgeType | None = None) -> list[GraphEdge]:
        with self._lock:
            return [
                edge.model_copy()
                for edge in self._edges.values()
                if edge.from_id == node_id and (edge_type is None or edge.type == edge_type)
            ]

    def edges_to(self, node_id: str, edge_type: EdgeType | None = None) -> list[GraphEdge]:
        with self._lock:
            return [
                edge.model_copy()
                for edge in self._edges.values()
                if edge.to_id == node_id and (edge_type is None or edge.type == edge_type)
            ]

    def all_edges(self) -> list[GraphEdge]:
        with self._lock:
            return [edge.model_copy() for edge in self._edges.values()]

    # ----- generation records -----

    def find_generation(self, node_id: str, tool_id: str, prompt_hash: str) -> GenerationRecord | None:
        with self._lock:
            record_id = self._generation_keys.get((node_id, tool_id, prompt_hash))
            return self._generations[record_id].model_copy(deep=True) if record_id is not None else None

    def upsert_generation(self, record: GenerationRecord) -> GenerationRecord:
        """Insert or replace the record with the same ``(node, tool, prompt hash)`` key.

        Raises:
            GraphInvariantError: If the owning node does not exist.
        """
        with self._lock:
            if record.node_id not in self._nodes:
                raise GraphInvariantError(f"Generation record references missing node {record.node_id}")
            existing_id = self._generation_keys.get(record.unique_key)
            if existing_id is not None:
                record = record.model_copy(update={"id": existing_id})
            self._generations[record.id] = record.model_copy(deep=True)
            self._generation_keys[record.unique_key] = record.id
            self._changed()
            return record.model_copy(deep=True)

    def delete_generation(self, record_id: str) -> None:
        with self._lock:
            record = self._generations.pop(record_id, None)
            if record is None:
                return
            del self._generation_keys[record.unique_key]
            self._changed()

    def generations_for(self, node_id: str, tool_id: str | None = None) -> list[GenerationRecord]:
        """Records of a node (optionally one tool), oldest first."""
        with self._lock:
            records = [
                record.model_copy(deep=True)
                for record in self._generations.values()
                if record.node_id == node_id and (tool_id is None or record.tool_id == tool_id)
            ]
        return sorted(records, key=lambda record: record.created)
