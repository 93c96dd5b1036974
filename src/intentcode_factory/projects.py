from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .errors import GraphInvariantError, ProjectNotFoundError
from .graph import GraphStore
from .models import (
    INTENT_ROOT_NAME,
    SOURCE_ROOT_NAME,
    SPECS_ROOT_NAME,
    EdgeType,
    GraphNode,
    NodeType,
)

logger = logging.getLogger(__name__)

SPECS_DIR = "specs"
INTENT_DIR = "intent"
SOURCE_DIR = "src"


def _node_path(node: GraphNode) -> Path:
    if node.path is None:
        raise GraphInvariantError(f"Node {node.name!r} ({node.type.value}) has no path")
    return node.path


@dataclass(frozen=True)
class ProjectRoots:
    """A project node and the root nodes of its specs, intent and source trees."""

    project: GraphNode
    specs: GraphNode
    intent: GraphNode
    source: GraphNode

    @property
    def path(self) -> Path:
        return _node_path(self.project)

    @property
    def specs_path(self) -> Path:
        return _node_path(self.specs)

    @property
    def intent_path(self) -> Path:
        return _node_path(self.intent)

    @property
    def source_path(self) -> Path:
        return _node_path(self.source)


class ProjectService:
    def __init__(self, graph: GraphStore) -> None:
        self.graph = graph

    def setup_project(self, name: str, path: Path) -> ProjectRoots:
        """Get or create a project and its three root nodes, creating the directories on disk.

        Raises:
            ValueError: If the name is blank or the project already exists at another path.
        """
        if not name.strip():
            raise ValueError("Project name must be non-empty")
        path = path.resolve()
        with self.graph.state_store.transaction():
            project = self.graph.get_or_create_node(None, NodeType.PROJECT, name, json_content={"path": str(path)})
            if project.path != path:
                raise ValueError(f"Project {name!r} already exists at {project.path}")
            specs = self._root(project, NodeType.SPECS_ROOT, SPECS_ROOT_NAME, path / SPECS_DIR)
            intent = self._root(project, NodeType.INTENT_ROOT, INTENT_ROOT_NAME, path / INTENT_DIR)
            source = self._root(project, NodeType.SOURCE_ROOT, SOURCE_ROOT_NAME, path / SOURCE_DIR)
            self.graph.link(intent, source, EdgeType.IMPLEMENTS)
        for root in (specs, intent, source):
            _node_path(root).mkdir(parents=True, exist_ok=True)
        logger.info("Project %r set up at %s", name, path)
        return ProjectRoots(project=project, specs=specs, intent=intent, source=source)

    def _root(self, project: GraphNode, node_type: NodeType, name: str, path: Path) -> GraphNode:
        return self.graph.get_or_create_node(project, node_type, name, json_content={"path": str(path)})

    def get_project(self, name: str) -> ProjectRoots | None:
        project = self.graph.find_child(None, NodeType.PROJECT, name)
        if project is None:
            return None
        specs = self.graph.find_child(project, NodeType.SPECS_ROOT, SPECS_ROOT_NAME)
        intent = self.graph.find_child(project, NodeType.INTENT_ROOT, INTENT_ROOT_NAME)
        source = self.graph.find_child(project, NodeType.SOURCE_ROOT, SOURCE_ROOT_NAME)
        if specs is None or intent is None or source is None:
            return None
        return ProjectRoots(project=project, specs=specs, intent=intent, source=source)

    def require_project(self, name: str) -> ProjectRoots:
        roots = self.get_project(name)
        if roots is None:
            raise ProjectNotFoundError(f"Project {name!r} is not set up; run 'project init' first")
        return roots

    def list_projects(self) -> list[GraphNode]:
        return sorted(
            self.graph.state_store.list_nodes(
                parent_id=None,
                node_type=NodeType.PROJECT,
                instance_id=self.graph.instance_id,
            ),
            key=lambda node: node.name,
        )
