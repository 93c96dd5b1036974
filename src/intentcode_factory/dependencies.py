from __future__ import annotations

import logging
import threading
from typing import Iterable

from .errors import GraphInvariantError
from .graph import GraphStore
from .models import DEPS_NAME, DependencyDelta, DependencyOperation, EdgeType, GraphNode, NodeType
from .utils import is_higher_version

logger = logging.getLogger(__name__)


class DependencyReconciler:
    """Folds per-file dependency deltas into the project's ``deps`` manifest node.

    Each file node keeps ``json_content["deps"]`` (name -> minimum version).
    A ``depends on`` edge from the file node to the manifest, named after the
    dependency, records which files still need it; the manifest's ``deps``
    map is the union of what those edges reference.
    """

    def __init__(self, graph: GraphStore) -> None:
        self.graph = graph
        self._locks_guard = threading.Lock()
        self._manifest_locks: dict[str, threading.Lock] = {}

    def _lock_for(self, project: GraphNode) -> threading.Lock:
        with self._locks_guard:
            return self._manifest_locks.setdefault(project.id, threading.Lock())

    def manifest_node(self, project: GraphNode) -> GraphNode:
        """Get or create the project's dependency manifest node."""
        return self.graph.get_or_create_node(project, NodeType.DEPS, DEPS_NAME, json_content={"deps": {}})

    def manifest_deps(self, project: GraphNode) -> dict[str, str]:
        node = self.manifest_node(project)
        return dict((node.json_content or {}).get("deps", {}))

    def apply_deltas(
        self,
        project: GraphNode,
        file_node: GraphNode,
        deltas: Iterable[DependencyDelta] | None,
    ) -> GraphNode | None:
        """Apply add/remove deltas declared by *file_node*.

        Returns:
            The updated manifest node, or None when *deltas* is None.
        """
        if deltas is None:
            return None
        deltas = list(deltas)
        with self._lock_for(project), self.graph.state_store.transaction():
            manifest = self.manifest_node(project)
            current_file = self.graph.require_node(file_node.id)
            file_json = dict(current_file.json_content or {})
            file_deps: dict[str, str] = dict(file_json.get("deps", {}))

            for delta in deltas:
                if delta.operation == DependencyOperation.ADD:
                    file_deps[delta.name] = delta.min_version or ""
                    self.graph.link(current_file, manifest, EdgeType.DEPENDS_ON, delta.name)
                else:
                    file_deps.pop(delta.name, None)
                    self.graph.unlink(current_file, manifest, EdgeType.DEPENDS_ON, delta.name)

            file_json["deps"] = dict(sorted(file_deps.items()))
            self.graph.set_content(current_file, json_content=file_json)

            # The manifest only grows from adds; a name leaves it once no edge references it.
            manifest_json = dict(manifest.json_content or {})
            manifest_deps: dict[str, str] = dict(manifest_json.get("deps", {}))
            for name in {delta.name for delta in deltas}:
                highest = self._highest_declared(manifest, name)
                if highest is None:
                    manifest_deps.pop(name, None)
                else:
                    manifest_deps[name] = highest
            manifest_json["deps"] = dict(sorted(manifest_deps.items()))
            manifest = self.graph.set_content(manifest, json_content=manifest_json)
        if deltas:
            logger.debug("Applied %d dependency delta(s) from %r", len(deltas), file_node.name)
        return manifest

    def replace_file_dependencies(
        self,
        project: GraphNode,
        file_node: GraphNode,
        declared: dict[str, str],
    ) -> GraphNode:
        """Make *file_node* declare exactly *declared*, retracting anything it no longer lists."""
        current = self.graph.require_node(file_node.id)
        previous = (current.json_content or {}).get("deps", {})
        deltas = [
            DependencyDelta(operation=DependencyOperation.REMOVE, name=name)
            for name in sorted(previous)
            if name not in declared
        ]
        deltas.extend(
            DependencyDelta(operation=DependencyOperation.ADD, name=name, min_version=version)
            for name, version in sorted(declared.items())
        )
        manifest = self.apply_deltas(project, file_node, deltas)
        if manifest is None:
            raise GraphInvariantError(f"Dependency manifest of project {project.name!r} was not updated")
        return manifest

    def declared_dependencies(self, project: GraphNode) -> dict[str, str]:
        """Union of the dependency sets of every file still linked to the manifest."""
        manifest = self.manifest_node(project)
        union: dict[str, str] = {}
        for edge in self.graph.edges_to(manifest, EdgeType.DEPENDS_ON):
            source = self.graph.get_node(edge.from_id)
            if source is None:
                continue
            version = (source.json_content or {}).get("deps", {}).get(edge.name)
            if version is None:
                continue
            if is_higher_version(version, union.get(edge.name)):
                union[edge.name] = version
        return dict(sorted(union.items()))

    def reconcile(self, project: GraphNode) -> dict[str, str]:
        """Rebuild the manifest's ``deps`` from the edges that still reference it."""
        with self._lock_for(project):
            manifest = self.manifest_node(project)
            union = self.declared_dependencies(project)
            manifest_json = dict(manifest.json_content or {})
            if manifest_json.get("deps") != union:
                dropped = sorted(set(manifest_json.get("deps", {})) - set(union))
                if dropped:
                    logger.info("Retracting dependencies no file declares any more: %s", ", ".join(dropped))
                manifest_json["deps"] = union
                self.graph.set_content(manifest, json_content=manifest_json)
        return union

    def _highest_declared(self, manifest: GraphNode, name: str) -> str | None:
        highest: str | None = None
        for edge in self.graph.edges_to(manifest, EdgeType.DEPENDS_ON):
            if edge.name != name:
                continue
            source = self.graph.get_node(edge.from_id)
            version = (source.json_content or {}).get("deps", {}).get(name) if source is not None else None
            if version is not None and is_higher_version(version, highest):
                highest = version
        return highest
